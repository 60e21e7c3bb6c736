# core/images.py
"""
Image handling for admin uploads and the inline-image migration.

- Identifies incoming images (Pillow for JPEG/PNG/WEBP/GIF, the ISO-BMFF
  `ftyp` brand for HEIC/HEIF, which browsers cannot display).
- Converts HEIC/HEIF to JPEG through pillow-heif.
- Uploads to Supabase Storage under a generated key and returns the public URL.
  A failed upload never leaves an object behind.
- Recognises image references that are still stored inline (data URIs or bare
  base64) so pages can render both representations.
"""
import asyncio
import base64
import binascii
import io
import re
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from core.config import settings, logger as core_logger
from core.data_client import DataAccessClient
from core.errors import AdminError, FormatConversionError, SizeLimitExceeded, UnsupportedFormatError, UploadError
from core.models import ImageRefOut, UploadResult

logger = core_logger.getChild("Images")

register_heif_opener()

HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"hevm", b"hevs", b"mif1", b"msf1"}
HEIF_EXTENSIONS = (".heic", ".heif")
# Pillow format name -> (content type, file extension)
WEB_FORMATS = {
    "JPEG": ("image/jpeg", "jpg"),
    "PNG": ("image/png", "png"),
    "WEBP": ("image/webp", "webp"),
    "GIF": ("image/gif", "gif"),
}
HEIF = "HEIF"

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/.+-]*)(?:;[^,;]*)*;base64,(?P<data>.*)$", re.DOTALL)
BARE_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\s]+={0,2}\s*$")
MIN_BARE_BASE64_LENGTH = 64


@dataclass
class UploadedFile:
    """An image file selected by an admin user."""
    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class PreparedImage:
    """Web-displayable image bytes ready for storage."""
    content: bytes
    content_type: str
    extension: str
    converted: bool = False


# --- Format detection and conversion ---

def is_heif(content: bytes, filename: str = "") -> bool:
    if len(content) >= 12 and content[4:8] == b"ftyp" and content[8:12] in HEIF_BRANDS:
        return True
    return filename.lower().endswith(HEIF_EXTENSIONS)


def sniff_format(content: bytes, filename: str = "") -> str:
    """Returns the Pillow format name, or "HEIF" for camera-native HEIC/HEIF files."""
    if is_heif(content, filename):
        return HEIF
    try:
        with Image.open(io.BytesIO(content)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError) as e:
        raise UnsupportedFormatError(f"Could not identify image '{filename}': {e}") from e
    if fmt not in WEB_FORMATS:
        raise UnsupportedFormatError(f"Image '{filename}' has unsupported format {fmt}.")
    return fmt


def convert_heif_to_jpeg(content: bytes, quality: int = settings.HEIC_JPEG_QUALITY) -> bytes:
    try:
        with Image.open(io.BytesIO(content)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, "JPEG", quality=quality)
            return out.getvalue()
    except Exception as e:
        raise FormatConversionError(f"HEIC conversion failed: {e}") from e


def prepare_image(content: bytes, filename: str = "", quality: int = settings.HEIC_JPEG_QUALITY) -> PreparedImage:
    """Validates an image and converts it to a web format when needed."""
    if not content:
        raise UnsupportedFormatError(f"Image '{filename}' is empty.")
    fmt = sniff_format(content, filename)
    if fmt == HEIF:
        converted = convert_heif_to_jpeg(content, quality)
        logger.debug(f"Converted HEIC '{filename}' ({len(content)} -> {len(converted)} bytes).")
        return PreparedImage(converted, "image/jpeg", "jpg", converted=True)
    content_type, extension = WEB_FORMATS[fmt]
    return PreparedImage(content, content_type, extension)


# --- Image references ---

def is_url(ref: Optional[str]) -> bool:
    if not ref:
        return False
    ref = ref.strip()
    if ref.startswith("/") and not ref.startswith("//"):
        return True
    parsed = urlparse(ref)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_inline_image(ref: Optional[str]) -> bool:
    if not ref or is_url(ref):
        return False
    ref = ref.strip()
    if DATA_URI_RE.match(ref):
        return True
    return len(ref) >= MIN_BARE_BASE64_LENGTH and bool(BARE_BASE64_RE.match(ref))


def decode_inline_image(ref: str) -> bytes:
    """Decodes a data URI or bare base64 payload."""
    match = DATA_URI_RE.match(ref.strip())
    payload = match.group("data") if match else ref
    try:
        return base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatConversionError(f"Inline image payload is not valid base64: {e}") from e


def describe_image_ref(ref: Optional[str]) -> ImageRefOut:
    """Tells which representation an image reference uses and how to display it."""
    if not ref or not ref.strip():
        return ImageRefOut(kind="empty")
    if is_url(ref):
        return ImageRefOut(kind="url", src=ref.strip())
    if DATA_URI_RE.match(ref.strip()):
        return ImageRefOut(kind="inline", src=ref.strip())
    if is_inline_image(ref):
        mime = "image/jpeg"
        try:
            fmt = sniff_format(decode_inline_image(ref))
            if fmt in WEB_FORMATS:
                mime = WEB_FORMATS[fmt][0]
        except AdminError as e:
            logger.debug(f"Could not sniff inline image, assuming JPEG: {e}")
        payload = "".join(ref.split())
        return ImageRefOut(kind="inline", src=f"data:{mime};base64,{payload}")
    logger.warning(f"Unrecognised image reference (first 32 chars): {ref[:32]!r}")
    return ImageRefOut(kind="empty")


# --- Upload ---

class ImageUploader:
    """Uploads admin images to object storage and returns their public URLs."""

    def __init__(self, db: DataAccessClient, bucket: str = settings.IMAGE_BUCKET,
                 max_bytes: int = settings.MAX_UPLOAD_BYTES, jpeg_quality: int = settings.HEIC_JPEG_QUALITY):
        self.db = db
        self.bucket = bucket
        self.max_bytes = max_bytes
        self.jpeg_quality = jpeg_quality

    def _check_size(self, size: int, filename: str) -> None:
        if size > self.max_bytes:
            limit_mb = self.max_bytes / (1024 * 1024)
            raise SizeLimitExceeded(
                f"'{filename}' is {size} bytes, limit is {self.max_bytes}.",
                user_message=f"The image is larger than the {limit_mb:.0f} MB upload limit.")

    async def store(self, key: str, image: PreparedImage) -> None:
        """Writes the object; on failure makes sure nothing is left under `key`."""
        def do_upload():
            return self.db.storage(self.bucket).upload(
                path=key,
                file=image.content,
                file_options={"content-type": image.content_type, "upsert": "true"},
            )
        try:
            await self.db.execute(f"[{self.bucket}/{key}] upload", do_upload)
        except AdminError as e:
            await self.discard(key)
            error = UploadError(f"Upload of '{key}' failed: {e}")
            error.retryable = e.retryable
            raise error from e

    async def public_url(self, key: str) -> str:
        url = await self.db.execute(f"[{self.bucket}/{key}] public url",
                                    lambda: self.db.storage(self.bucket).get_public_url(key))
        if not url:
            raise UploadError(f"No public URL returned for '{key}'.")
        return url

    async def discard(self, key: str) -> bool:
        """Removes an object that no row references; returns False if removal failed."""
        try:
            await self.db.execute(f"[{self.bucket}/{key}] remove", lambda: self.db.storage(self.bucket).remove([key]))
            logger.info(f"[{self.bucket}/{key}] Removed unreferenced object.")
            return True
        except AdminError as e:
            logger.error(f"[{self.bucket}/{key}] Could not remove unreferenced object: {e}")
            return False

    async def upload(self, file: UploadedFile, folder: str = "uploads") -> UploadResult:
        self._check_size(len(file.content), file.filename)
        prepared = await asyncio.to_thread(prepare_image, file.content, file.filename, self.jpeg_quality)
        self._check_size(len(prepared.content), file.filename)

        key = f"{folder.strip('/')}/{uuid.uuid4().hex}.{prepared.extension}"
        await self.store(key, prepared)
        try:
            url = await self.public_url(key)
        except AdminError as e:
            await self.discard(key)
            raise UploadError(f"Could not resolve public URL for '{key}': {e}") from e

        logger.info(f"Uploaded '{file.filename}' as '{key}' ({len(prepared.content)} bytes, converted={prepared.converted}).")
        return UploadResult(url=url, key=key, content_type=prepared.content_type,
                            size=len(prepared.content), converted=prepared.converted)
