"""
HEIC decoding and JPEG/PNG encoding with Pillow.
"""

import io
import logging

from PIL import Image, UnidentifiedImageError
from pillow_heif import register_heif_opener

from heic_batch.exceptions import ConversionFailed

logger = logging.getLogger(__name__)

register_heif_opener()

VALID_TARGET_MIMES = ('image/jpeg', 'image/png')
SOURCE_EXTENSIONS = frozenset({'heic', 'heif'})

_PIL_FORMATS = {
    'image/jpeg': 'JPEG',
    'image/png': 'PNG',
}


def extension_for(target_mime: str) -> str:
    if target_mime not in _PIL_FORMATS:
        raise ConversionFailed(f"Can't convert from heic file to {target_mime}.")
    return target_mime.split('/')[1]


def convert_image(data: bytes, target_mime: str) -> bytes:
    pil_format = _PIL_FORMATS.get(target_mime)
    if pil_format is None:
        raise ConversionFailed(f"Can't convert from heic file to {target_mime}.")

    try:
        with Image.open(io.BytesIO(data)) as img:
            if pil_format == 'JPEG' and img.mode != 'RGB':
                img = img.convert('RGB')
            out = io.BytesIO()
            save_kwargs = {'quality': 95} if pil_format == 'JPEG' else {'optimize': True}
            img.save(out, format=pil_format, **save_kwargs)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ConversionFailed(f"Could not convert image: {e}") from e

    converted = out.getvalue()
    logger.debug(f"Converted {len(data)} bytes to {len(converted)} bytes of {target_mime}")
    return converted
