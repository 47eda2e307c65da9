from fastapi import APIRouter, Depends
import logging

from app.image_service.metadata import MetadataService
from app.image_service.cleanup import ExpirySweeper
from app.dependencies.dependencies import get_metadata_service, get_sweeper, require_api_key
from app.image_service.service import get_config
from app.image_service.models import CleanupResponse, ConfigResponse

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["system"],
    dependencies=[Depends(require_api_key)],
)

@router.post("/validate-api-key")
def validate_api_key():
    """Reaching this handler means the key was accepted."""
    return {"success": True, "valid": True}

@router.get("/config", response_model=ConfigResponse)
def config(metadata: MetadataService = Depends(get_metadata_service)):
    return ConfigResponse(config=get_config(metadata))

@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(sweeper: ExpirySweeper = Depends(get_sweeper)):
    """Deletes every image whose expiry time has passed."""
    deleted, failed = await sweeper.run_once()
    return CleanupResponse(deleted_count=deleted, failed_count=failed)
