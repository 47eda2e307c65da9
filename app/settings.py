from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Literal, Optional

class Settings(BaseSettings):
    aws_region: str = Field("us-east-1")
    s3_bucket: str = Field("image-host-bucket")
    dynamodb_table: str = Field("ImageHostKV")
    aws_endpoint_url: Optional[str] = Field(None)

    aws_access_key_id: str = Field("test")
    aws_secret_access_key: str = Field("test")

    app_title: str = Field("Image Host")

    # Public origin used to build image URLs; falls back to the request origin
    public_base_url: Optional[str] = Field(None)

    # Flat API key list, merged with the keys stored under "api_keys"
    api_keys: List[str] = Field(default_factory=list)

    default_page_limit: int = Field(12)
    max_page_limit: int = Field(100)

    max_upload_count: int = Field(20)
    max_file_size: int = Field(10 * 1024 * 1024)
    image_quality: int = Field(80)

    # Conditional-write retries for a single index key before giving up
    index_write_retries: int = Field(5)
    # Ids per index page; a page must stay under the 400 KB item limit
    index_page_size: int = Field(5000)
    tag_rename_policy: Literal["overwrite", "merge"] = Field("overwrite")

    # 0 disables the background sweep
    cleanup_interval_seconds: int = Field(3600)
    cleanup_item_timeout_seconds: float = Field(30.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",  # tolerate unknown vars if needed
    )

settings = Settings()
