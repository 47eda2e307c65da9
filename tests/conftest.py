import os
import random
import pytest
from moto import mock_aws
from fastapi.testclient import TestClient

# Set test environment variables BEFORE importing app modules
os.environ["TESTING"] = "true"

# Dummy AWS credentials for moto
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["S3_BUCKET"] = "image-host-bucket"
os.environ["DYNAMODB_TABLE"] = "ImageHostKV"
os.environ["API_KEYS"] = '["test-key"]'
os.environ["PUBLIC_BASE_URL"] = "https://img.example.com"
# The scheduled sweep is driven explicitly in tests
os.environ["CLEANUP_INTERVAL_SECONDS"] = "0"
# Clear the AWS_ENDPOINT_URL so moto mocks are used instead of localstack
os.environ.pop("AWS_ENDPOINT_URL", None)

from app.main import app
from app.storage.s3 import S3Service
from app.storage.dynamodb import DynamoDBService
from app.image_service.metadata import MetadataService
from app.image_service.models import ImagePaths, ImageRecord, ImageSizes, new_image_id
from app.image_service.processor import generate_paths


@pytest.fixture(scope="function")
def aws():
    with mock_aws():
        yield


@pytest.fixture
def db(aws):
    return DynamoDBService()


@pytest.fixture
def s3(aws):
    return S3Service()


@pytest.fixture
def metadata(db):
    return MetadataService(db, rng=random.Random(1234))


@pytest.fixture
def make_record():
    """Builds an ImageRecord without touching any storage."""
    def _make(orientation="landscape", tags=None, fmt="jpeg", expiry_time=None, **kwargs):
        image_id = kwargs.pop("id", None) or new_image_id()
        width, height = (1920, 1080) if orientation == "landscape" else (1080, 1920)
        paths = generate_paths(image_id, orientation, fmt)
        return ImageRecord(
            id=image_id,
            original_name=f"{image_id}.{fmt}",
            orientation=orientation,
            format=fmt,
            width=width,
            height=height,
            tags=tags or [],
            expiry_time=expiry_time,
            paths=ImagePaths(original=paths["original"]),
            sizes=ImageSizes(original=1234),
            **kwargs,
        )
    return _make


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-key"}


@pytest.fixture(scope="function")
def test_client(aws):
    # lifespan creates the bucket, the table and the services inside the moto context
    with TestClient(app) as client:
        yield client
