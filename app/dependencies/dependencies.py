from fastapi import Depends, Request
from app.auth import AuthService
from app.storage.dynamodb import DynamoDBService
from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.image_service.cleanup import ExpirySweeper
from app.exceptions import UnauthorizedException
from app.settings import settings

def get_s3_service(request: Request) -> S3Service:
    """Dependency provider for S3Service"""
    return request.app.state.s3

def get_dynamodb_service(request: Request) -> DynamoDBService:
    """Dependency provider for DynamoDBService"""
    return request.app.state.db

def get_metadata_service(request: Request) -> MetadataService:
    """Dependency provider for MetadataService"""
    return request.app.state.metadata

def get_sweeper(request: Request) -> ExpirySweeper:
    return request.app.state.sweeper

def get_base_url(request: Request) -> str:
    """Origin used to build absolute image URLs."""
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    return str(request.base_url).rstrip("/")

def require_api_key(
    request: Request,
    db: DynamoDBService = Depends(get_dynamodb_service),
):
    """Rejects requests without a valid `Authorization: Bearer <key>` header."""
    api_key = AuthService.extract_api_key(request.headers.get("Authorization"))
    if not api_key or not AuthService(db).validate_api_key(api_key):
        raise UnauthorizedException()
