"""
    Centralized exception handling for the FastAPI application.
"""
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
import logging

log = logging.getLogger(__name__)

class APIException(Exception):
    """Base class for API exceptions."""
    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(self.detail)

class ImageNotFoundException(APIException):
    """Exception for when an image is not found."""
    def __init__(self, image_id: str):
        super().__init__(status_code=404, detail=f"Image with ID '{image_id}' not found.")

class TagNotFoundException(APIException):
    """Exception for when a tag is not registered."""
    def __init__(self, name: str):
        super().__init__(status_code=404, detail=f"Tag '{name}' not found.")

class ValidationException(APIException):
    """Exception for malformed IDs, missing fields and bad enum values."""
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)

class InvalidImageException(ValidationException):
    """Exception for invalid image files."""

class UnauthorizedException(APIException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(status_code=401, detail=detail)

class StorageException(APIException):
    """Exception for blob or key-value store failures."""
    def __init__(self, detail: str, status_code: int = 500):
        super().__init__(status_code=status_code, detail=detail)

class S3Exception(StorageException):
    """Exception for S3 failures."""

class DynamoDBException(StorageException):
    """Exception for DynamoDB failures."""

class IndexConflictException(DynamoDBException):
    """A conditional write kept losing to concurrent writers."""
    def __init__(self, key: str):
        super().__init__(detail=f"Concurrent modification of '{key}', retry the request.", status_code=409)
        self.key = key

def error_body(detail) -> dict:
    return {"success": False, "error": detail}

async def api_exception_handler(request: Request, exc: APIException):
    """Handles API exceptions."""
    if exc.status_code >= 500:
        log.error(f"API Exception: {exc.detail}", exc_info=exc)
    else:
        log.info(f"API Exception: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.detail),
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handles FastAPI HTTP exceptions."""
    log.error(f"HTTP Exception: {exc.detail}", exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.detail),
    )

async def generic_exception_handler(request: Request, exc: Exception):
    """Handles all other exceptions."""
    log.error(f"Unhandled Exception: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error"),
    )

def add_exception_handlers(app):
    """Adds exception handlers to the FastAPI app."""
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
