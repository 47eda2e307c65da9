from fastapi import APIRouter, Depends
import logging

from app.image_service.metadata import MetadataService
from app.dependencies.dependencies import get_metadata_service, require_api_key
from app.image_service.models import (
    BatchTagsRequest,
    BatchTagsResponse,
    CreateTagRequest,
    DeleteTagResponse,
    RenameTagRequest,
    TagCount,
    TagResponse,
    TagsResponse,
)
from app.image_service.validation import sanitize_tag_name
from app.exceptions import ValidationException

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/tags",
    tags=["tags"],
    dependencies=[Depends(require_api_key)],
)

@router.get("", response_model=TagsResponse)
def list_tags(metadata: MetadataService = Depends(get_metadata_service)):
    """Lists every registered tag with its image count."""
    return TagsResponse(tags=metadata.get_all_tags())

@router.post("", response_model=TagResponse)
def create_tag(body: CreateTagRequest, metadata: MetadataService = Depends(get_metadata_service)):
    name = sanitize_tag_name(body.name)
    if not name:
        raise ValidationException("Tag name is required")

    metadata.create_tag(name)
    return TagResponse(tag=TagCount(name=name, count=len(metadata.get_tag_image_ids(name))))

@router.post("/batch", response_model=BatchTagsResponse)
def batch_update_tags(body: BatchTagsRequest, metadata: MetadataService = Depends(get_metadata_service)):
    """Adds and removes tags on many images; unknown image IDs are skipped."""
    if not body.image_ids:
        raise ValidationException("imageIds array is required")

    add_tags = [t for t in map(sanitize_tag_name, body.add_tags) if t]
    remove_tags = [t for t in map(sanitize_tag_name, body.remove_tags) if t]
    if not add_tags and not remove_tags:
        raise ValidationException("Either addTags or removeTags must be provided")

    updated, failed = metadata.batch_update_tags(body.image_ids, add_tags, remove_tags)
    return BatchTagsResponse(updated_count=updated, failed_count=failed)

@router.put("/{name}", response_model=TagResponse)
def rename_tag(name: str, body: RenameTagRequest, metadata: MetadataService = Depends(get_metadata_service)):
    new_name = sanitize_tag_name(body.new_name)
    if not new_name:
        raise ValidationException("New tag name is required")
    if new_name == name:
        raise ValidationException("New name must be different from old name")

    affected = metadata.rename_tag(name, new_name)
    count = len(metadata.get_tag_image_ids(new_name))
    log.info("Renamed tag %s -> %s, %d images affected", name, new_name, affected)
    return TagResponse(tag=TagCount(name=new_name, count=count))

@router.delete("/{name}", response_model=DeleteTagResponse)
def delete_tag(name: str, metadata: MetadataService = Depends(get_metadata_service)):
    affected = metadata.delete_tag(name)
    return DeleteTagResponse(message="Tag deleted", affected_images=affected)
