from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

from app.storage.dynamodb import DynamoDBService
from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.image_service.cleanup import ExpirySweeper
from app.settings import settings
from app.routers.images import router as images_router
from app.routers.tags import router as tags_router
from app.routers.random import router as random_router
from app.routers.system import router as system_router
from app.routers.files import router as files_router
from app.exceptions import add_exception_handlers

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("image-host")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
        Async context manager for FastAPI application lifecycle events.
        Initializes the S3 and DynamoDB services, the metadata service on top
        of them and the scheduled expiry sweep; stops them on shutdown.
    """
    # Initialize resources
    app.state.s3 = S3Service()
    app.state.db = DynamoDBService()
    app.state.metadata = MetadataService(app.state.db)
    app.state.sweeper = ExpirySweeper(app.state.metadata, app.state.s3)
    app.state.sweeper.start()
    yield
    # Cleanup resources
    await app.state.sweeper.stop()
    app.state.s3.close()
    app.state.db.close()

# Initialize App
app = FastAPI(
    title=settings.app_title,
    lifespan=lifespan,
    description="Image Host: upload, tag, browse and serve random images",
)

# Add exception handlers
add_exception_handlers(app)

# CORS - Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)

# Add the routers
app.include_router(random_router)
app.include_router(files_router)
app.include_router(images_router)
app.include_router(tags_router)
app.include_router(system_router)

# Check Health
@app.get("/")
def read_root():
    """
        Default end point
    """
    return "Image Host is running."

if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
