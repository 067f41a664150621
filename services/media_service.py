"""
Image intake and compression.

Builds ImageAsset records from uploaded files, rejects files the catalog
can't use, and recompresses oversized photos before upload. Compression
runs off the event loop (asyncio.to_thread) but images are processed one
at a time, in input order, so progress updates stay monotonic.
"""

import asyncio
import mimetypes
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional, Sequence, Union
from uuid import uuid4
import structlog

from PIL import Image, ImageOps

from config import settings
from exceptions import CompressionError, ImageValidationError
from models.bulk_upload import CompressionProgress, ImageAsset, NormalizedImage
from utils.text_utils import normalize_file_name, split_secondary_suffix, strip_extension

logger = structlog.get_logger(__name__)

ALLOWED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})
CONTENT_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
EXTENSION_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
OUTPUT_FORMATS = {
    "WEBP": ("image/webp", ".webp"),
    "JPEG": ("image/jpeg", ".jpg"),
}
QUALITY_STEP = 0.1


# ===================
# INTAKE
# ===================

def guess_content_type(file_name: str, declared: Optional[str] = None) -> str:
    """Declared type if given, else from the extension."""
    guessed = EXTENSION_TYPES.get(Path(file_name).suffix.lower()) or mimetypes.guess_type(file_name)[0]
    content_type = (declared or guessed or "application/octet-stream").lower()
    return CONTENT_TYPE_ALIASES.get(content_type, content_type)


def build_image_asset(
    file_name: str,
    content: bytes,
    content_type: Optional[str] = None,
    image_id: Optional[str] = None,
    preview_uri: Optional[str] = None,
) -> ImageAsset:
    """
    Wrap an uploaded file as an ImageAsset.

    clean_name comes from normalize_file_name; files with a trailing
    _<number> / _<letter> suffix are flagged as secondary views.
    """
    image_id = image_id or str(uuid4())
    _, suffix = split_secondary_suffix(file_name)

    return ImageAsset(
        id=image_id,
        file_name=file_name,
        content=content,
        content_type=guess_content_type(file_name, content_type),
        clean_name=normalize_file_name(file_name),
        is_secondary=suffix is not None,
        preview_uri=preview_uri or f"upload://{image_id}/{file_name}",
    )


def load_image_assets(paths: Sequence[Union[str, Path]]) -> list[ImageAsset]:
    """Read image files from disk (CLI and scripts)."""
    assets = []
    for raw_path in paths:
        path = Path(raw_path)
        assets.append(build_image_asset(
            file_name=path.name,
            content=path.read_bytes(),
            preview_uri=path.resolve().as_uri(),
        ))
    return assets


def validate_images(
    images: Sequence[ImageAsset],
    max_bytes: Optional[int] = None,
    max_count: Optional[int] = None,
) -> None:
    """
    Reject the whole upload if any image is unusable.

    Raises:
        ImageValidationError: Wrong type, too large, or too many images
    """
    max_bytes = max_bytes or settings.max_image_bytes
    max_count = max_count or settings.max_images_per_upload
    errors: list[dict] = []

    if len(images) > max_count:
        errors.append({
            "file_name": None,
            "error": f"Maximum {max_count} images per upload, got {len(images)}",
        })

    for image in images:
        if image.content_type not in ALLOWED_CONTENT_TYPES:
            errors.append({
                "file_name": image.file_name,
                "error": f"Unsupported type {image.content_type}; use JPG, PNG or WEBP",
            })
        if image.size == 0:
            errors.append({"file_name": image.file_name, "error": "File is empty"})
        elif image.size > max_bytes:
            errors.append({
                "file_name": image.file_name,
                "error": f"File is {image.size} bytes, limit is {max_bytes}",
            })

    if errors:
        logger.warning("image_validation_failed", error_count=len(errors), image_count=len(images))
        raise ImageValidationError(errors)


# ===================
# PROGRESS
# ===================

class CompressionProgressTracker:
    """
    Compression-phase progress, separate from upload progress.

    None between runs; one CompressionProgress per processed image.
    """

    def __init__(self, listener: Optional[Callable[[Optional[CompressionProgress]], None]] = None):
        self._listener = listener
        self._total = 0
        self._current = 0
        self.progress: Optional[CompressionProgress] = None

    def start(self, total: int) -> None:
        self._total = total
        self._current = 0

    def advance(self, file_name: str) -> CompressionProgress:
        self._current += 1
        percentage = round(self._current / self._total * 100) if self._total else 100
        self.progress = CompressionProgress(
            total=self._total,
            current=self._current,
            file_name=file_name,
            percentage=percentage,
        )
        if self._listener:
            self._listener(self.progress)
        return self.progress

    def finish(self) -> None:
        self.progress = None
        if self._listener:
            self._listener(None)


# ===================
# COMPRESSION
# ===================

class MediaNormalizer:
    """
    Size/quality policy for product photos.

    Files at or below the threshold pass through untouched. Larger files
    are resized so the long edge fits max_dimension and re-encoded,
    lowering quality step by step until the result fits the threshold.
    If it never fits, or the file can't be decoded, the original bytes
    are kept and the failure is logged.
    """

    def __init__(
        self,
        threshold_bytes: Optional[int] = None,
        max_dimension: Optional[int] = None,
        quality: Optional[float] = None,
        min_quality: Optional[float] = None,
        output_format: Optional[str] = None,
    ):
        self.threshold_bytes = threshold_bytes or settings.compression_threshold_bytes
        self.max_dimension = max_dimension or settings.compression_max_dimension
        self.quality = quality or settings.compression_quality
        self.min_quality = min_quality or settings.compression_min_quality
        self.output_format = (output_format or settings.compression_format).upper()

    async def normalize(self, image: ImageAsset) -> NormalizedImage:
        """
        Compress one image if it is over the threshold.

        Never raises for codec problems: on CompressionError the original
        image is returned with compression_error set.
        """
        if image.size <= self.threshold_bytes:
            return self._passthrough(image)

        try:
            return await asyncio.to_thread(self._compress, image)
        except CompressionError as e:
            logger.warning(
                "image_compression_failed",
                file_name=image.file_name,
                size=image.size,
                reason=e.details.get("reason"),
            )
            return self._passthrough(image, error=e.details.get("reason"))

    async def normalize_all(
        self,
        images: Sequence[ImageAsset],
        progress: Optional[CompressionProgressTracker] = None,
    ) -> list[NormalizedImage]:
        """Normalize images sequentially, in input order."""
        if progress:
            progress.start(len(images))

        normalized = []
        for image in images:
            normalized.append(await self.normalize(image))
            if progress:
                progress.advance(image.file_name)

        compressed = sum(1 for n in normalized if n.compressed)
        logger.info(
            "images_normalized",
            total=len(normalized),
            compressed=compressed,
            failed=sum(1 for n in normalized if n.compression_error),
            bytes_before=sum(n.original_size for n in normalized),
            bytes_after=sum(n.size for n in normalized),
        )

        if progress:
            progress.finish()
        return normalized

    # ===================
    # HELPERS
    # ===================

    def _passthrough(self, image: ImageAsset, error: Optional[str] = None) -> NormalizedImage:
        return NormalizedImage(
            image_id=image.id,
            file_name=image.file_name,
            content=image.content,
            content_type=image.content_type,
            original_size=image.size,
            compressed=False,
            compression_error=error,
        )

    def _compress(self, image: ImageAsset) -> NormalizedImage:
        """Blocking encode loop, run in a worker thread."""
        content_type, extension = OUTPUT_FORMATS.get(self.output_format, OUTPUT_FORMATS["WEBP"])

        try:
            with Image.open(BytesIO(image.content)) as source:
                frame = ImageOps.exif_transpose(source)
                frame.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
                frame = self._convert_mode(frame)

                quality = self.quality
                while True:
                    buffer = BytesIO()
                    frame.save(buffer, format=self.output_format, quality=int(round(quality * 100)))
                    data = buffer.getvalue()

                    if len(data) <= self.threshold_bytes:
                        return NormalizedImage(
                            image_id=image.id,
                            file_name=strip_extension(image.file_name) + extension,
                            content=data,
                            content_type=content_type,
                            original_size=image.size,
                            compressed=True,
                            width=frame.width,
                            height=frame.height,
                        )

                    next_quality = round(quality - QUALITY_STEP, 2)
                    if next_quality < self.min_quality:
                        break
                    quality = next_quality

        except Exception as e:
            raise CompressionError(image.file_name, f"{type(e).__name__}: {e}") from e

        raise CompressionError(
            image.file_name,
            f"{len(data)} bytes at quality {quality}, budget {self.threshold_bytes}",
        )

    def _convert_mode(self, frame: Image.Image) -> Image.Image:
        if self.output_format == "JPEG":
            return frame if frame.mode == "RGB" else frame.convert("RGB")
        if frame.mode in ("RGB", "RGBA"):
            return frame
        has_alpha = frame.mode in ("LA", "PA", "P") and (
            frame.mode != "P" or "transparency" in frame.info
        )
        return frame.convert("RGBA" if has_alpha else "RGB")
