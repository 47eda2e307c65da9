import io
import struct
import time
import zlib
from datetime import datetime, timezone

import pytest
from PIL import Image

from app.image_service import processor, service, validation
from app.image_service.cleanup import ExpirySweeper
from app.image_service.models import to_timestamp
from app.exceptions import (
    DynamoDBException,
    ImageNotFoundException,
    InvalidImageException,
    S3Exception,
    ValidationException,
)
from botocore.exceptions import ClientError


def make_image_bytes(size=(20, 10), fmt="PNG"):
    """Generate a simple valid image in-memory."""
    img = Image.new("RGB", size, color="red")
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_bomb_png(width=60000, height=60000):
    """A tiny PNG whose header claims far more pixels than Pillow allows."""
    def chunk(kind, data):
        crc = zlib.crc32(kind + data) & 0xFFFFFFFF
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


# ------------------------------
# processor
# ------------------------------

def test_generate_paths_layout():
    paths = processor.generate_paths("abc", "portrait", "jpeg")
    assert paths == {
        "original": "original/portrait/abc.jpeg",
        "webp": "portrait/webp/abc.webp",
        "avif": "portrait/avif/abc.avif",
    }
    assert processor.generate_paths("g", "landscape", "gif")["original"] == "original/landscape/g.gif"


def test_image_info_png():
    fmt, width, height, orientation = processor.image_info(make_image_bytes((20, 10)))
    assert (fmt.value, width, height, orientation.value) == ("png", 20, 10, "landscape")


def test_image_info_portrait_jpeg():
    fmt, width, height, orientation = processor.image_info(make_image_bytes((10, 30), "JPEG"))
    assert fmt.value == "jpeg"
    assert orientation.value == "portrait"


def test_square_is_landscape():
    assert processor.detect_orientation(10, 10).value == "landscape"


def test_image_info_rejects_garbage():
    with pytest.raises(InvalidImageException):
        processor.image_info(b"notanimage")


def test_image_info_rejects_decompression_bomb():
    with pytest.raises(InvalidImageException):
        processor.image_info(make_bomb_png())


def test_content_types():
    assert processor.content_type_for("jpeg") == "image/jpeg"
    assert processor.content_type_for("avif") == "image/avif"
    assert processor.content_type_for("tiff") == "application/octet-stream"


# ------------------------------
# validation
# ------------------------------

@pytest.mark.parametrize("raw,clean", [
    ("  Sunset ", "sunset"),
    ("Cats & Dogs!", "cats dogs"),
    ("multi   space", "multi space"),
    ("dash-ok_under", "dash-ok_under"),
    ("", ""),
])
def test_sanitize_tag_name(raw, clean):
    assert validation.sanitize_tag_name(raw) == clean


def test_parse_tags():
    assert validation.parse_tags("A, b,,a ,c") == ["a", "b", "c"]
    assert validation.parse_tags(["X", "y"]) == ["x", "y"]
    assert validation.parse_tags(None) == []


def test_parse_number_clamps():
    assert validation.parse_number(None, 12) == 12
    assert validation.parse_number("abc", 12) == 12
    assert validation.parse_number("0", 12) == 1
    assert validation.parse_number("-5", 1) == 1
    assert validation.parse_number("500", 12, maximum=100) == 100


def test_is_valid_uuid():
    assert validation.is_valid_uuid("0b7a3f6e-2c4d-4f7e-9a51-3c1f5d2b8e90")
    assert not validation.is_valid_uuid("nope")


def test_best_format_and_mobile():
    assert validation.get_best_format("image/avif,image/webp,*/*") == "avif"
    assert validation.get_best_format("image/webp,*/*") == "webp"
    assert validation.get_best_format(None) == "original"
    assert validation.is_mobile_device("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0)")
    assert not validation.is_mobile_device("Mozilla/5.0 (X11; Linux x86_64)")


# ------------------------------
# service
# ------------------------------

def test_expiry_from_minutes():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert service.expiry_from_minutes(90, now) == "2025-01-01T01:30:00.000Z"
    assert service.expiry_from_minutes(0, now) is None
    assert service.expiry_from_minutes(None, now) is None


def test_to_timestamp_is_sortable():
    earlier = to_timestamp(datetime(2025, 1, 1, 9, 0, 0, 5000, tzinfo=timezone.utc))
    later = to_timestamp(datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc))
    assert earlier == "2025-01-01T09:00:00.005Z"
    assert earlier < later


def test_build_urls(make_record):
    record = make_record()
    urls = service.build_urls(record, "https://img.example.com/")
    assert urls.original == f"https://img.example.com/r2/{record.paths.original}"
    assert urls.webp == ""
    assert urls.avif == ""


def test_resolve_variant_falls_back_to_original(make_record):
    record = make_record(fmt="png")
    assert service.resolve_variant(record, "webp", None) == (record.paths.original, "image/png")

    record.paths.webp = "landscape/webp/x.webp"
    assert service.resolve_variant(record, None, "image/webp") == ("landscape/webp/x.webp", "image/webp")


def test_resolve_variant_gif_is_always_original(make_record):
    record = make_record(fmt="gif")
    record.paths.avif = "landscape/avif/x.avif"
    assert service.resolve_variant(record, "avif", None) == (record.paths.original, "image/gif")


def test_save_image_and_meta(metadata, s3):
    record = service.save_image_and_meta(
        metadata=metadata,
        s3=s3,
        data=make_image_bytes((10, 40)),
        filename="tall.png",
        tags=["t"],
        expiry_minutes=5,
    )

    assert record.orientation == "portrait"
    assert record.paths.original == f"original/portrait/{record.id}.png"
    assert record.expiry_time is not None
    assert s3.get(record.paths.original)["content_type"] == "image/png"
    assert metadata.get_tag_image_ids("t") == [record.id]


def test_save_image_and_meta_rejects_oversized(metadata, mocker):
    mocker.patch.object(service.settings, "max_file_size", 3)
    with pytest.raises(ValidationException):
        service.save_image_and_meta(metadata, mocker.Mock(), b"12345", "f.png", [])


def test_save_image_and_meta_s3_error_keeps_metadata_clean(metadata, mocker):
    mock_s3 = mocker.Mock()
    mock_s3.upload.side_effect = ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")

    with pytest.raises(S3Exception):
        service.save_image_and_meta(metadata, mock_s3, make_image_bytes(), "f.png", ["t"])
    assert metadata.get_image_ids() == []


def test_save_image_and_meta_rolls_back_on_metadata_failure(metadata, s3, mocker):
    # the record is written, then indexing it fails
    mocker.patch.object(metadata.store, "prepend", side_effect=DynamoDBException("boom"))
    rollback = mocker.spy(metadata, "delete_image")

    with pytest.raises(DynamoDBException):
        service.save_image_and_meta(metadata, s3, make_image_bytes(), "f.png", ["t"])

    image_id = rollback.call_args.args[0]
    assert metadata.get_image(image_id) is None
    listing = s3.client.list_objects_v2(Bucket=service.settings.s3_bucket)
    assert listing.get("KeyCount") == 0


def test_remove_image(metadata, s3):
    record = service.save_image_and_meta(metadata, s3, make_image_bytes(), "f.png", [])
    service.remove_image(metadata, s3, record.id)
    assert metadata.get_image(record.id) is None
    assert s3.get(record.paths.original) is None


def test_remove_image_not_found(metadata, mocker):
    with pytest.raises(ImageNotFoundException):
        service.remove_image(metadata, mocker.Mock(), "doesnotexist")


def test_default_config(metadata):
    config = service.get_config(metadata)
    assert "avif" in config.supported_formats
    assert config.max_upload_count == service.settings.max_upload_count


# ------------------------------
# expiry sweep
# ------------------------------

@pytest.mark.asyncio
async def test_sweep_deletes_only_expired(metadata, s3, make_record):
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    old = metadata.save_image(make_record(expiry_time="2025-05-31T23:00:00.000Z"))
    fresh = metadata.save_image(make_record(expiry_time="2025-06-01T01:00:00.000Z"))
    forever = metadata.save_image(make_record())

    deleted, failed = await ExpirySweeper(metadata, s3, interval=0).run_once(now)

    assert (deleted, failed) == (1, 0)
    assert metadata.get_image(old.id) is None
    assert metadata.get_image(fresh.id) is not None
    assert metadata.get_image(forever.id) is not None


@pytest.mark.asyncio
async def test_sweep_continues_past_failures(metadata, make_record, mocker):
    first = metadata.save_image(make_record(expiry_time="2000-01-01T00:00:00.000Z"))
    second = metadata.save_image(make_record(expiry_time="2000-01-01T00:00:00.000Z"))
    mock_s3 = mocker.Mock()
    calls = []

    def flaky_delete(keys):
        calls.append(keys)
        if len(calls) == 1:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "DeleteObjects")

    mock_s3.delete_many.side_effect = flaky_delete

    deleted, failed = await ExpirySweeper(metadata, mock_s3, interval=0).run_once()

    assert (deleted, failed) == (1, 1)
    # newest first: the second image is swept first and its deletion fails
    assert metadata.get_image(second.id) is not None
    assert metadata.get_image(first.id) is None


@pytest.mark.asyncio
async def test_sweep_times_out_stuck_deletions(metadata, make_record, mocker):
    metadata.save_image(make_record(expiry_time="2000-01-01T00:00:00.000Z"))
    def slow_remove(*args):
        time.sleep(0.5)

    stuck = mocker.patch("app.image_service.cleanup.remove_image", side_effect=slow_remove)

    deleted, failed = await ExpirySweeper(metadata, mocker.Mock(), interval=0, item_timeout=0.05).run_once()

    assert (deleted, failed) == (0, 1)
    stuck.assert_called_once()


@pytest.mark.asyncio
async def test_sweeper_start_and_stop(metadata, mocker):
    sweeper = ExpirySweeper(metadata, mocker.Mock(), interval=3600)
    sweeper.start()
    assert sweeper._task is not None
    await sweeper.stop()
    assert sweeper._task is None

    disabled = ExpirySweeper(metadata, mocker.Mock(), interval=0)
    disabled.start()
    assert disabled._task is None
