import io
import logging
import os

from dataclasses import dataclass
from PIL import Image, ImageOps, UnidentifiedImageError

from opaquedrive.crypto.aead import aead_decrypt, aead_encrypt_with_nonce
from opaquedrive.utils.dataModels import AEAD_NONCE_SIZE, AES_KEY_SIZE
from opaquedrive.utils.errors import TagMismatch, ValidationError

logger = logging.getLogger(__name__)

# Formats Pillow can re-encode without carrying EXIF/XMP/text chunks over
STRIPPABLE_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
    "image/tiff": "TIFF",
    "image/gif": "GIF",
}


# rendering hints only, nothing identifying
_KEEP_INFO = ("transparency", "duration", "loop")


@dataclass(frozen=True)
class FileKey:
    key: bytes
    nonce: bytes

    def __repr__(self) -> str:
        return "FileKey(<redacted>)"


def generate_file_key() -> FileKey:
    """Fresh AES-256 key and 96-bit nonce; never shared between files."""
    return FileKey(key=os.urandom(AES_KEY_SIZE), nonce=os.urandom(AEAD_NONCE_SIZE))


def strip_metadata(data: bytes, mime_type: str | None) -> bytes:
    """Re-encode images without embedded metadata (EXIF GPS, device, comments).

    Non-image types pass through unchanged. Must run before `encrypt`.
    """
    fmt = STRIPPABLE_FORMATS.get((mime_type or "").lower())
    if fmt is None:
        return data

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            frames = getattr(img, "n_frames", 1)
            if frames > 1 and fmt in Image.SAVE_ALL:
                clean = _copy_frames(img)
                out = io.BytesIO()
                clean[0].save(out, format=fmt, save_all=True, append_images=clean[1:])
                logger.debug("Stripped metadata from %d frames", len(clean))
                return out.getvalue()
            if frames > 1:
                # multi-picture JPEG (MPO): only the primary picture survives
                img.seek(0)
            # bake orientation into pixels before the tag disappears
            upright = ImageOps.exif_transpose(img)
            clean = _scrubbed(upright.copy(), upright.info)
            out = io.BytesIO()
            save_kwargs = {"format": fmt}
            if fmt == "JPEG":
                save_kwargs["quality"] = 95
            clean.save(out, **save_kwargs)
    except (UnidentifiedImageError, OSError, SyntaxError, KeyError) as e:
        raise ValidationError(f"Cannot strip metadata from {mime_type} data: {e}") from e

    logger.debug("Stripped image metadata (%d -> %d bytes)", len(data), out.tell())
    return out.getvalue()


def _scrubbed(img: Image.Image, info: dict) -> Image.Image:
    img.info = {k: v for k, v in info.items() if k in _KEEP_INFO}
    return img


def _copy_frames(img: Image.Image) -> list:
    frames = []
    for i in range(img.n_frames):
        img.seek(i)
        frames.append(_scrubbed(img.copy(), img.info))
    return frames


def encrypt(data: bytes, key: bytes, nonce: bytes) -> bytes:
    """AES-256-GCM with the file's own key/nonce; output is ciphertext || tag."""
    return aead_encrypt_with_nonce(key, nonce, data)


def decrypt(data: bytes, key: bytes, nonce: bytes) -> bytes:
    return aead_decrypt(key, nonce, data, failure=TagMismatch)
