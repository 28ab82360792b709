"""
Image helpers: resizing, data-URL encoding and the prompt-level image fingerprint.
"""

import base64
import io
import re

from PIL import Image

DEFAULT_RESIZE_WIDTH = 1024
DEFAULT_RESIZE_HEIGHT = 1024
DEFAULT_JPG_QUALITY = 90

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def resize_image_before_processing(image, target_size=(DEFAULT_RESIZE_WIDTH, DEFAULT_RESIZE_HEIGHT)):
    """
    Shrink an image to fit inside target_size, keeping its aspect ratio.

    Args:
        image: PIL Image
        target_size: Tuple of (width, height) bounding box

    Returns:
        A new RGB image no larger than target_size
    """
    resized = image.convert("RGB")
    original_size = resized.size
    resized.thumbnail(target_size, Image.Resampling.LANCZOS)
    if resized.size != original_size:
        print(f"Image resized from {original_size} to {resized.size} to reduce token count")
    return resized


def image_to_data_url(image, quality=DEFAULT_JPG_QUALITY):
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode('utf-8')
    return f"data:image/jpeg;base64,{encoded}"


def image_file_to_data_url(image_path, target_size=(DEFAULT_RESIZE_WIDTH, DEFAULT_RESIZE_HEIGHT),
                           quality=DEFAULT_JPG_QUALITY):
    """Open an image file (path or file-like object), resize it and return a JPEG data URL"""
    with Image.open(image_path) as img:
        resized = resize_image_before_processing(img, target_size)
    return image_to_data_url(resized, quality)


def image_hash(data_url):
    """
    Best-effort fingerprint of an image data URL: its length plus a few
    alphanumerics sampled at 25% of the string. Not cryptographic; only used
    to keep prompts for an unchanged image identical.
    """
    length = len(data_url)
    offset = int(length * 0.25)
    sample = data_url[offset:offset + 20]
    return f"img_{length}_{_NON_ALNUM.sub('', sample)[:10]}"
