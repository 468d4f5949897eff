"""Image conditioning ahead of card extraction.

Phone photos arrive rotated via EXIF, oversized and soft. Straightening,
shrinking and leveling them makes the ID digits far more legible to the
vision model and keeps request size bounded.
"""

from __future__ import annotations

import io

import structlog
from PIL import Image, ImageEnhance, ImageFilter, ImageOps

logger = structlog.get_logger()


class ImageNormalizer:
    """Best-effort preprocessing; never fails a submission."""

    output_mime_type = "image/jpeg"

    def __init__(
        self,
        max_dimension: int = 1600,
        jpeg_quality: int = 90,
        sharpen_percent: int = 120,
        contrast_factor: float = 1.25,
        brightness_factor: float = 1.05,
    ) -> None:
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.sharpen_percent = sharpen_percent
        self.contrast_factor = contrast_factor
        self.brightness_factor = brightness_factor

    def normalize(self, image_bytes: bytes) -> bytes:
        """Return conditioned JPEG bytes, or ``image_bytes`` itself on any failure."""
        try:
            return self._process(image_bytes)
        except Exception:
            logger.warning(
                "Image normalization failed, using original image",
                size_bytes=len(image_bytes),
                exc_info=True,
            )
            return image_bytes

    def _process(self, image_bytes: bytes) -> bytes:
        with Image.open(io.BytesIO(image_bytes)) as src:
            # 1. Orientation from EXIF
            img = ImageOps.exif_transpose(src)

            # 2. Flatten transparency / palettes onto white
            if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
                rgba = img.convert("RGBA")
                img = Image.new("RGB", rgba.size, (255, 255, 255))
                img.paste(rgba, mask=rgba.split()[3])
            elif img.mode != "RGB":
                img = img.convert("RGB")

            # 3. Bounded downscale (never upscale)
            width, height = img.size
            if max(width, height) > self.max_dimension:
                ratio = self.max_dimension / max(width, height)
                new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
                img = img.resize(new_size, Image.Resampling.LANCZOS)

            # 4. Sharpen
            img = img.filter(
                ImageFilter.UnsharpMask(radius=2, percent=self.sharpen_percent, threshold=3)
            )

            # 5. Level contrast and brightness
            img = ImageOps.autocontrast(img, cutoff=1)
            img = ImageEnhance.Contrast(img).enhance(self.contrast_factor)
            img = ImageEnhance.Brightness(img).enhance(self.brightness_factor)

            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=self.jpeg_quality, optimize=True)

        logger.debug(
            "Image normalized",
            original_size=(width, height),
            final_size=img.size,
            size_bytes=buf.tell(),
        )
        return buf.getvalue()
