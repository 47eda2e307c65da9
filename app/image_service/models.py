from typing import List, Optional, Union
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from uuid import uuid4

def new_image_id() -> str:
    """Generates a new unique image ID."""
    return str(uuid4())

def to_timestamp(dt: datetime) -> str:
    """Canonical sortable UTC timestamp, e.g. 2024-05-01T12:00:00.000Z."""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"

def utc_now() -> str:
    return to_timestamp(datetime.now(timezone.utc))

class Orientation(str, Enum):
    landscape = "landscape"
    portrait = "portrait"

class ImageFormat(str, Enum):
    jpeg = "jpeg"
    png = "png"
    gif = "gif"
    webp = "webp"
    avif = "avif"

class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

class ImagePaths(CamelModel):
    original: str
    webp: str = ""
    avif: str = ""

class ImageSizes(CamelModel):
    original: int = 0
    webp: int = 0
    avif: int = 0

class ImageRecord(CamelModel):
    id: str = Field(default_factory=new_image_id)
    original_name: str
    upload_time: str = Field(default_factory=utc_now)
    expiry_time: Optional[str] = None
    orientation: Orientation
    format: ImageFormat
    width: int
    height: int
    tags: List[str] = []
    paths: ImagePaths
    sizes: ImageSizes = Field(default_factory=ImageSizes)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, tags: List[str]) -> List[str]:
        # set semantics, first-seen order kept for display
        return list(dict.fromkeys(tags))

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True)

class ImageUrls(CamelModel):
    original: str
    webp: str = ""
    avif: str = ""

class ImageItem(ImageRecord):
    urls: ImageUrls

class TagCount(CamelModel):
    name: str
    count: int

# -------------------------
# Request bodies
# -------------------------
class UpdateImageRequest(CamelModel):
    tags: Optional[Union[List[str], str]] = None
    expiry_minutes: Optional[float] = None

class CreateTagRequest(CamelModel):
    name: str = ""

class RenameTagRequest(CamelModel):
    new_name: str = ""

class BatchTagsRequest(CamelModel):
    image_ids: List[str] = []
    add_tags: List[str] = []
    remove_tags: List[str] = []

# -------------------------
# Responses
# -------------------------
class ImageResponse(CamelModel):
    success: bool = True
    image: ImageItem

class ListImagesResponse(CamelModel):
    success: bool = True
    images: List[ImageItem]
    page: int
    limit: int
    total: int
    total_pages: int

class UploadResult(CamelModel):
    id: str
    status: str
    original_name: Optional[str] = None
    urls: Optional[ImageUrls] = None
    orientation: Optional[Orientation] = None
    tags: Optional[List[str]] = None
    sizes: Optional[ImageSizes] = None
    expiry_time: Optional[str] = None
    error: Optional[str] = None

class UploadResponse(CamelModel):
    success: bool = True
    results: List[UploadResult]

class TagsResponse(CamelModel):
    success: bool = True
    tags: List[TagCount]

class TagResponse(CamelModel):
    success: bool = True
    tag: TagCount

class DeleteTagResponse(CamelModel):
    success: bool = True
    message: str
    affected_images: int

class BatchTagsResponse(CamelModel):
    success: bool = True
    updated_count: int
    failed_count: int = 0

class MessageResponse(CamelModel):
    success: bool = True
    message: str

class CleanupResponse(CamelModel):
    success: bool = True
    deleted_count: int
    failed_count: int = 0

class ServiceConfig(CamelModel):
    max_upload_count: int
    max_file_size: int
    supported_formats: List[str]
    image_quality: int

class ConfigResponse(CamelModel):
    success: bool = True
    config: ServiceConfig
