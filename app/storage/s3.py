import boto3
from typing import Dict, List, Optional
from botocore.exceptions import ClientError
from app.settings import settings
import logging

log = logging.getLogger(__name__)

# -------------------------
# S3 Service
# -------------------------
class S3Service:
    def __init__(self):
        session = boto3.session.Session(region_name=settings.aws_region)
        kwargs = {
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
        }
        if settings.aws_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_endpoint_url

        self.client = session.client("s3", **kwargs)
        log.info("Initialized S3 client")

        # Ensure bucket exists at initialization
        self.ensure_bucket()

    def ensure_bucket(self):
        try:
            self.client.head_bucket(Bucket=settings.s3_bucket)
            log.debug("Bucket %s already exists", settings.s3_bucket)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code in ("404", "NoSuchBucket"):
                self.client.create_bucket(Bucket=settings.s3_bucket)
                log.info("Created bucket %s", settings.s3_bucket)
            else:
                log.error("Failed to check/create bucket: %s", e)
                raise

    def upload(self, data: bytes, key: str, content_type: str):
        self.client.put_object(
            Bucket=settings.s3_bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        log.debug("Uploaded %s to s3://%s/%s", key, settings.s3_bucket, key)

    def get(self, key: str) -> Optional[Dict]:
        """Returns {"body", "content_type"} or None if the key is absent."""
        try:
            obj = self.client.get_object(Bucket=settings.s3_bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            raise
        return {
            "body": obj["Body"].read(),
            "content_type": obj.get("ContentType") or "application/octet-stream",
        }

    def delete_many(self, keys: List[str]):
        if not keys:
            return
        self.client.delete_objects(
            Bucket=settings.s3_bucket,
            Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
        )
        log.debug("Deleted %d objects from s3://%s", len(keys), settings.s3_bucket)

    def close(self):
        log.info("Closed S3 client")
