"""
Resize uploaded images into fixed WebP variants and push them to object storage.
"""
import io
import logging
import time
import uuid
import warnings
from typing import Dict, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

import app_config
from app_errors import InfrastructureException, ValidationException
from storage_adapter import ObjectStorage, paths_from_public_urls

logger = logging.getLogger(__name__)

# (suffix, width, height)
VARIANTS = (
    ("thumb", 300, 300),
    ("medium", 800, 600),
    ("large", 1920, 1080),
)
WEBP_QUALITY = 85


def load_image(data: bytes) -> Image.Image:
    try:
        with warnings.catch_warnings():
            # bomb warnings become errors
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            image = Image.open(io.BytesIO(data))
            image.load()
    except (Image.DecompressionBombError, Image.DecompressionBombWarning) as e:
        raise ValidationException("Image dimensions are too large") from e
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationException("Uploaded file is not a valid image") from e
    image = ImageOps.exif_transpose(image)
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    return image


def fit_size(source: Tuple[int, int], target: Tuple[int, int]) -> Tuple[int, int]:
    """Target box, shrunk proportionally when the source is smaller (no enlargement)."""
    width, height = target
    scale = min(1.0, source[0] / width, source[1] / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def render_variant(image: Image.Image, width: int, height: int) -> bytes:
    size = fit_size(image.size, (width, height))
    fitted = ImageOps.fit(image, size, method=Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    fitted.save(buffer, format="WEBP", quality=WEBP_QUALITY)
    return buffer.getvalue()


class ImagePipeline:

    def __init__(self, storage: ObjectStorage, bucket: str = None):
        self.storage = storage
        self.bucket = bucket or app_config.PROPERTY_IMAGES_BUCKET

    def upload_and_optimize(self, data: bytes, property_id: str) -> Dict[str, str]:
        """Upload thumbnail, medium and large variants; any failure aborts the lot."""
        image = load_image(data)
        stamp = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        urls = {}
        stored = []
        try:
            for suffix, width, height in VARIANTS:
                path = f"properties/{property_id}/{stamp}-{suffix}.webp"
                urls[suffix] = self.storage.upload(self.bucket, path, render_variant(image, width, height), "image/webp")
                stored.append(path)
        except Exception:
            self._remove_quietly(stored)
            raise
        logger.info("Uploaded %d image variants for property %s", len(urls), property_id)
        return {"thumbnail": urls["thumb"], "medium": urls["medium"], "large": urls["large"]}

    def _remove_quietly(self, paths) -> None:
        if not paths:
            return
        try:
            self.storage.remove(self.bucket, paths)
        except InfrastructureException as e:
            logger.warning("Could not remove %d partial variant(s): %s", len(paths), e)

    def delete_images(self, urls) -> None:
        self.storage.remove(self.bucket, paths_from_public_urls(urls, self.bucket))

    @staticmethod
    def optimized_url(url: str, width: int = None, height: int = None, fmt: str = None) -> str:
        # variants are generated at upload time, the stored URL is already optimized
        return url
