from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import logging
from botocore.exceptions import BotoCoreError, ClientError

from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.image_service.models import (
    ImageItem,
    ImageRecord,
    ImageSizes,
    ImageUrls,
    ServiceConfig,
    new_image_id,
    to_timestamp,
)
from app.image_service import processor
from app.image_service.validation import get_best_format
from app.settings import settings
from app.exceptions import ImageNotFoundException, S3Exception, StorageException, ValidationException

log = logging.getLogger(__name__)

CONFIG_KEY = "config"


def build_urls(record: ImageRecord, base_url: str) -> ImageUrls:
    """Rewrites stored relative paths into absolute URLs served from /r2."""
    base = f"{base_url.rstrip('/')}/r2"
    return ImageUrls(
        original=f"{base}/{record.paths.original}",
        webp=f"{base}/{record.paths.webp}" if record.paths.webp else "",
        avif=f"{base}/{record.paths.avif}" if record.paths.avif else "",
    )

def to_item(record: ImageRecord, base_url: str) -> ImageItem:
    return ImageItem(**record.model_dump(), urls=build_urls(record, base_url))

def expiry_from_minutes(minutes: Optional[float], now: Optional[datetime] = None) -> Optional[str]:
    """A positive number of minutes from now, anything else means no expiry."""
    if not minutes or minutes <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    return to_timestamp(now + timedelta(minutes=minutes))

def blob_keys(record: ImageRecord) -> List[str]:
    return [k for k in (record.paths.original, record.paths.webp, record.paths.avif) if k]


def save_image_and_meta(
    metadata: MetadataService,
    s3: S3Service,
    data: bytes,
    filename: str,
    tags: List[str],
    expiry_minutes: Optional[float] = None,
) -> ImageRecord:
    """Stores the original in S3, then persists and indexes its metadata."""
    if len(data) > settings.max_file_size:
        raise ValidationException(f"File exceeds {settings.max_file_size} bytes")

    fmt, width, height, orientation = processor.image_info(data)
    image_id = new_image_id()
    record = ImageRecord(
        id=image_id,
        original_name=filename or f"{image_id}.{processor.extension_for(fmt.value)}",
        expiry_time=expiry_from_minutes(expiry_minutes),
        orientation=orientation,
        format=fmt,
        width=width,
        height=height,
        tags=tags,
        paths=processor.stored_paths(image_id, orientation.value, fmt.value),
        sizes=ImageSizes(original=len(data)),
    )

    # upload to s3
    try:
        s3.upload(data=data, key=record.paths.original, content_type=processor.content_type_for(fmt.value))
    except (BotoCoreError, ClientError) as e:
        log.error(f"S3 upload failed: {e}")
        raise S3Exception(f"Failed to upload image to S3: {e}")

    try:
        metadata.save_image(record)
    except StorageException:
        _rollback_upload(metadata, s3, record)
        raise
    return record

def _rollback_upload(metadata: MetadataService, s3: S3Service, record: ImageRecord):
    """Undoes whatever part of a failed save made it to the stores."""
    try:
        metadata.delete_image(record.id)
    except ImageNotFoundException:
        pass
    except StorageException as e:
        log.error(f"Rollback of metadata for {record.id} failed: {e.detail}")
    try:
        s3.delete_many(blob_keys(record))
    except (BotoCoreError, ClientError) as e:
        log.error(f"Rollback of S3 objects for {record.id} failed: {e}")

def remove_image(metadata: MetadataService, s3: S3Service, image_id: str) -> ImageRecord:
    """Removes the image's objects from S3, then its metadata and index entries."""
    image = metadata.get_image(image_id)
    if not image:
        raise ImageNotFoundException(image_id)

    try:
        s3.delete_many(blob_keys(image))
    except (BotoCoreError, ClientError) as e:
        log.error(f"S3 delete_many failed: {e}")
        raise S3Exception(f"Failed to delete image from S3: {e}")

    return metadata.delete_image(image_id)

def resolve_variant(record: ImageRecord, requested: Optional[str], accept: Optional[str]) -> Tuple[str, str]:
    """Picks the stored path and content type to serve for a random image."""
    if record.format == "gif":
        return record.paths.original, "image/gif"

    variant = requested if requested in ("original", "webp", "avif") else get_best_format(accept)
    if variant == "avif" and record.paths.avif:
        return record.paths.avif, "image/avif"
    if variant == "webp" and record.paths.webp:
        return record.paths.webp, "image/webp"
    return record.paths.original, processor.content_type_for(record.format)

def get_config(metadata: MetadataService) -> ServiceConfig:
    stored = metadata.store.read(CONFIG_KEY)
    if stored:
        return ServiceConfig.model_validate(stored)
    return ServiceConfig(
        max_upload_count=settings.max_upload_count,
        max_file_size=settings.max_file_size,
        supported_formats=processor.SUPPORTED_FORMATS,
        image_quality=settings.image_quality,
    )
