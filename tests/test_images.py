import base64
import io

import pytest
from PIL import Image

from core.errors import FormatConversionError, SizeLimitExceeded, UnsupportedFormatError, UploadError
from core.images import (
    ImageUploader, UploadedFile, describe_image_ref, decode_inline_image, is_heif, is_inline_image, prepare_image,
    sniff_format,
)
from tests.fakes import api_error

BUCKET = "site-images"


def make_image(fmt: str = "PNG", size=(8, 6), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


# Minimal ISO-BMFF header with a HEIC brand and no decodable payload
BROKEN_HEIC = b"\x00\x00\x00\x18ftypheic\x00\x00\x00\x00mif1heic" + b"\x00" * 32


# --- Format detection and conversion ---

def test_sniff_format_identifies_web_formats():
    assert sniff_format(make_image("PNG")) == "PNG"
    assert sniff_format(make_image("JPEG")) == "JPEG"


def test_sniff_format_rejects_non_images():
    with pytest.raises(UnsupportedFormatError):
        sniff_format(b"%PDF-1.7 not an image", "doc.pdf")


def test_is_heif_uses_brand_or_extension():
    assert is_heif(BROKEN_HEIC)
    assert is_heif(b"", "IMG_0042.HEIC")
    assert not is_heif(make_image("PNG"), "photo.png")


def test_prepare_image_passes_web_formats_through():
    content = make_image("PNG")
    prepared = prepare_image(content, "logo.png")
    assert prepared.content == content
    assert (prepared.content_type, prepared.extension, prepared.converted) == ("image/png", "png", False)


def test_prepare_image_converts_heic_to_jpeg():
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), (10, 120, 200)).save(buf, "HEIF")

    prepared = prepare_image(buf.getvalue(), "IMG_0042.heic")

    assert prepared.converted
    assert prepared.content_type == "image/jpeg"
    with Image.open(io.BytesIO(prepared.content)) as img:
        assert img.format == "JPEG"
        assert img.size == (16, 16)


def test_prepare_image_reports_failed_heic_conversion():
    with pytest.raises(FormatConversionError):
        prepare_image(BROKEN_HEIC, "IMG_0043.heic")


def test_prepare_image_rejects_empty_content():
    with pytest.raises(UnsupportedFormatError):
        prepare_image(b"", "empty.jpg")


# --- Image references ---

def test_inline_image_detection():
    payload = base64.b64encode(make_image("PNG")).decode()
    assert is_inline_image(f"data:image/png;base64,{payload}")
    assert is_inline_image(payload)
    assert not is_inline_image("https://cdn.example.com/a.jpg")
    assert not is_inline_image("/images/a.jpg")
    assert not is_inline_image("short")
    assert not is_inline_image(None)


def test_decode_inline_image_handles_both_forms():
    content = make_image("PNG")
    payload = base64.b64encode(content).decode()
    assert decode_inline_image(f"data:image/png;base64,{payload}") == content
    assert decode_inline_image(payload) == content
    with pytest.raises(FormatConversionError):
        decode_inline_image("data:image/png;base64,@@not-base64@@")


def test_describe_image_ref_resolves_each_representation():
    payload = base64.b64encode(make_image("PNG")).decode()

    assert describe_image_ref("https://cdn.example.com/a.jpg").model_dump() == {
        "kind": "url", "src": "https://cdn.example.com/a.jpg"}
    assert describe_image_ref(f"data:image/png;base64,{payload}").kind == "inline"
    bare = describe_image_ref(payload)
    assert bare.kind == "inline"
    assert bare.src == f"data:image/png;base64,{payload}"
    assert describe_image_ref("").kind == "empty"
    assert describe_image_ref(None).src is None


# --- Upload ---

@pytest.mark.asyncio
async def test_upload_stores_object_and_returns_public_url(db, fake_backend):
    uploader = ImageUploader(db, bucket=BUCKET)

    result = await uploader.upload(UploadedFile("hero.png", make_image("PNG")), folder="settings")

    assert result.key.startswith("settings/") and result.key.endswith(".png")
    assert result.url.endswith(f"/{BUCKET}/{result.key}")
    assert fake_backend.objects[result.key] == make_image("PNG")
    assert not result.converted


@pytest.mark.asyncio
async def test_upload_rejects_oversized_files_before_uploading(db, fake_backend):
    uploader = ImageUploader(db, bucket=BUCKET, max_bytes=10)

    with pytest.raises(SizeLimitExceeded):
        await uploader.upload(UploadedFile("big.png", make_image("PNG")))
    assert fake_backend.count(f"storage:{BUCKET}", "upload") == 0


@pytest.mark.asyncio
async def test_failed_heic_conversion_uploads_nothing(db, fake_backend):
    uploader = ImageUploader(db, bucket=BUCKET)

    with pytest.raises(FormatConversionError):
        await uploader.upload(UploadedFile("IMG_0043.heic", BROKEN_HEIC))
    assert fake_backend.objects == {}


@pytest.mark.asyncio
async def test_failed_upload_leaves_no_object_behind(db, fake_backend):
    uploader = ImageUploader(db, bucket=BUCKET)
    fake_backend.fail(f"storage:{BUCKET}", "upload", api_error("PGRST000"), times=3)

    with pytest.raises(UploadError) as excinfo:
        await uploader.upload(UploadedFile("hero.png", make_image("PNG")))

    assert excinfo.value.retryable
    assert fake_backend.objects == {}
    assert fake_backend.count(f"storage:{BUCKET}", "remove") == 1


@pytest.mark.asyncio
async def test_unresolvable_public_url_removes_object(db, fake_backend):
    uploader = ImageUploader(db, bucket=BUCKET)
    fake_backend.fail(f"storage:{BUCKET}", "public_url", ValueError("no url"))

    with pytest.raises(UploadError):
        await uploader.upload(UploadedFile("hero.png", make_image("PNG")))
    assert fake_backend.objects == {}
