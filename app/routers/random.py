from fastapi import APIRouter, Depends, Header, Query, Response
from typing import Optional
import logging

from app.storage.s3 import S3Service
from app.image_service.metadata import MetadataService
from app.dependencies.dependencies import get_metadata_service, get_s3_service
from app.image_service.service import resolve_variant
from app.image_service.validation import is_mobile_device, parse_tags, validate_orientation
from app.exceptions import APIException

log = logging.getLogger(__name__)

# Public: no API key required
router = APIRouter(prefix="/api", tags=["random"])

NO_CACHE = "no-cache, no-store, must-revalidate"

@router.get("/random")
def random_image(
    tags: Optional[str] = Query(None),
    exclude: Optional[str] = Query(None),
    orientation: Optional[str] = Query(None),
    format: Optional[str] = Query(None),
    user_agent: Optional[str] = Header(None),
    accept: Optional[str] = Header(None),
    metadata: MetadataService = Depends(get_metadata_service),
    s3: S3Service = Depends(get_s3_service),
):
    """
    Serves the bytes of a random image.

    - `tags`: comma separated, the image must carry all of them.
    - `exclude`: comma separated, the image must carry none of them.
    - `orientation`: landscape, portrait or auto (portrait for mobile user agents).
    - `format`: original, webp or avif; otherwise negotiated from `Accept`.
    """
    if orientation == "auto":
        resolved_orientation = "portrait" if is_mobile_device(user_agent) else "landscape"
    else:
        resolved_orientation = validate_orientation(orientation)

    image = metadata.get_random_image(
        tags=parse_tags(tags),
        exclude=parse_tags(exclude),
        orientation=resolved_orientation,
    )
    if not image:
        raise APIException(status_code=404, detail="No images found matching criteria")

    path, content_type = resolve_variant(image, format, accept)
    obj = s3.get(path)
    if obj is None:
        log.warning("Random image %s has no object at %s", image.id, path)
        raise APIException(status_code=404, detail="Image file not found")

    return Response(
        content=obj["body"],
        media_type=content_type,
        headers={"Cache-Control": NO_CACHE},
    )
