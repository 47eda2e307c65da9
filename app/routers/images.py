from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from typing import List, Optional
import logging

from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.dependencies.dependencies import (
    get_base_url,
    get_metadata_service,
    get_s3_service,
    require_api_key,
)
from app.image_service.service import (
    build_urls,
    expiry_from_minutes,
    remove_image,
    save_image_and_meta,
    to_item,
)
from app.image_service.models import (
    ImageResponse,
    ListImagesResponse,
    MessageResponse,
    UpdateImageRequest,
    UploadResponse,
    UploadResult,
)
from app.image_service.validation import is_valid_uuid, parse_number, parse_tags, validate_orientation
from app.exceptions import APIException, ImageNotFoundException, ValidationException
from app.settings import settings

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["images"],
    dependencies=[Depends(require_api_key)],
)

def check_image_id(image_id: str):
    if not is_valid_uuid(image_id):
        raise ValidationException("Invalid image ID")

@router.post("/upload", response_model=UploadResponse)
async def upload_images(
    files: List[UploadFile] = File(...),
    tags: Optional[str] = Form(None),  # Comma Separated Values
    expiry_minutes: Optional[float] = Form(None, alias="expiryMinutes"),
    metadata: MetadataService = Depends(get_metadata_service),
    s3: S3Service = Depends(get_s3_service),
    base_url: str = Depends(get_base_url),
):
    """Uploads one or more images; each file succeeds or fails on its own."""
    if len(files) > settings.max_upload_count:
        raise ValidationException(f"At most {settings.max_upload_count} files per upload")

    tags_list = parse_tags(tags)
    results = []
    for file in files:
        contents = await file.read()
        try:
            record = save_image_and_meta(
                metadata=metadata,
                s3=s3,
                data=contents,
                filename=file.filename,
                tags=tags_list,
                expiry_minutes=expiry_minutes,
            )
        except APIException as e:
            log.warning("Upload of %s failed: %s", file.filename, e.detail)
            results.append(UploadResult(id="", status="error", original_name=file.filename, error=e.detail))
            continue
        results.append(UploadResult(
            id=record.id,
            status="success",
            original_name=record.original_name,
            urls=build_urls(record, base_url),
            orientation=record.orientation,
            tags=record.tags,
            sizes=record.sizes,
            expiry_time=record.expiry_time,
        ))
    return UploadResponse(success=any(r.status == "success" for r in results), results=results)

@router.get("/images", response_model=ListImagesResponse)
def list_images_handler(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    orientation: Optional[str] = Query(None),
    metadata: MetadataService = Depends(get_metadata_service),
    base_url: str = Depends(get_base_url),
):
    """Lists images newest first, optionally filtered by tag and orientation."""
    page_no = parse_number(page, 1)
    page_size = parse_number(limit, settings.default_page_limit, maximum=settings.max_page_limit)

    images, total = metadata.list_images(
        page=page_no,
        limit=page_size,
        tag=tag or None,
        orientation=validate_orientation(orientation),
    )
    return ListImagesResponse(
        images=[to_item(image, base_url) for image in images],
        page=page_no,
        limit=page_size,
        total=total,
        total_pages=-(-total // page_size),
    )

@router.get("/images/{image_id}", response_model=ImageResponse)
def get_image(
    image_id: str,
    metadata: MetadataService = Depends(get_metadata_service),
    base_url: str = Depends(get_base_url),
):
    """Gets image metadata."""
    check_image_id(image_id)
    image = metadata.get_image(image_id)
    if not image:
        raise ImageNotFoundException(image_id)
    return ImageResponse(image=to_item(image, base_url))

@router.put("/images/{image_id}", response_model=ImageResponse)
def update_image(
    image_id: str,
    body: UpdateImageRequest,
    metadata: MetadataService = Depends(get_metadata_service),
    base_url: str = Depends(get_base_url),
):
    """Replaces the tag set and/or the expiry of an image."""
    check_image_id(image_id)

    updates = {}
    if body.tags is not None:
        updates["tags"] = parse_tags(body.tags)
    if "expiry_minutes" in body.model_fields_set:
        updates["expiry_time"] = expiry_from_minutes(body.expiry_minutes)

    updated = metadata.update_image(image_id, updates)
    return ImageResponse(image=to_item(updated, base_url))

@router.delete("/images/{image_id}", response_model=MessageResponse)
def delete_image(
    image_id: str,
    metadata: MetadataService = Depends(get_metadata_service),
    s3: S3Service = Depends(get_s3_service),
):
    """Deletes an image's files and metadata."""
    check_image_id(image_id)
    remove_image(metadata, s3, image_id)
    return MessageResponse(message="Image deleted")
