from fastapi import APIRouter, Depends, Response
import logging

from app.storage.s3 import S3Service
from app.dependencies.dependencies import get_s3_service
from app.exceptions import APIException

log = logging.getLogger(__name__)

# Public object serving for the URLs built by build_urls
router = APIRouter(prefix="/r2", tags=["files"])

@router.get("/{path:path}")
def serve_file(path: str, s3: S3Service = Depends(get_s3_service)):
    if not path:
        raise APIException(status_code=400, detail="Path required")
    obj = s3.get(path)
    if obj is None:
        raise APIException(status_code=404, detail="Not found")
    return Response(
        content=obj["body"],
        media_type=obj["content_type"],
        headers={"Cache-Control": "public, max-age=31536000"},
    )
