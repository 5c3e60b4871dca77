import io
import re
from dataclasses import dataclass
from typing import List, Sequence
from PIL import Image
from .config import settings
from .exceptions import InvalidInput, PreprocessError
from .logger import logger

MIB = 1024 * 1024


@dataclass(frozen=True)
class RawImage:
    data: bytes
    filename: str
    content_type: str = "image/jpeg"


@dataclass(frozen=True)
class PreprocessedImage:
    data: bytes
    filename: str
    content_type: str
    original_size_bytes: int
    compressed_size_bytes: int
    compressed: bool

    @property
    def compression_ratio(self) -> float:
        """Percent reduction, 0.0 for pass-through images."""
        if not self.original_size_bytes:
            return 0.0
        return round((1 - self.compressed_size_bytes / self.original_size_bytes) * 100, 1)

    def stat(self) -> dict:
        return {
            "filename": self.filename,
            "original_size_bytes": self.original_size_bytes,
            "compressed_size_bytes": self.compressed_size_bytes,
            "compression_ratio": self.compression_ratio,
        }


def safe_filename(name: str, index: int) -> str:
    """`compressed_<n>_<name>` with anything outside [a-z0-9.] replaced by `_`."""
    safe = re.sub(r"[^a-z0-9.]", "_", (name or "image.jpg").lower())
    return f"compressed_{index + 1}_{safe}"


def compress_image(data: bytes, max_dimension: int, quality: int) -> bytes:
    """
    Fit the image inside a max_dimension square (never enlarging) and
    re-encode it as a progressive JPEG.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode != "RGB":
            img = img.convert("RGB")
        img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality, optimize=True, progressive=True)
        return buf.getvalue()


def preprocess_image(image: RawImage, index: int) -> PreprocessedImage:
    original_size = len(image.data)
    filename = safe_filename(image.filename, index)

    if original_size <= settings.IMAGE_COMPRESSION_THRESHOLD_BYTES:
        logger.info(
            f"Skipping compression for {image.filename} ({original_size / MIB:.2f}MB is under threshold)",
            extra={"image_index": index, "original_size_bytes": original_size},
        )
        return PreprocessedImage(
            data=image.data,
            filename=filename,
            content_type=image.content_type,
            original_size_bytes=original_size,
            compressed_size_bytes=original_size,
            compressed=False,
        )

    try:
        logger.info(f"Compressing {image.filename} ({original_size / MIB:.2f}MB)")
        result = compress_image(image.data, settings.IMAGE_MAX_DIMENSION, settings.IMAGE_QUALITY)

        if len(result) > settings.IMAGE_SECOND_PASS_THRESHOLD_BYTES:
            logger.info(
                f"Further compressing {image.filename} ({len(result) / MIB:.2f}MB after first pass)"
            )
            result = compress_image(
                result,
                settings.IMAGE_SECOND_PASS_MAX_DIMENSION,
                settings.IMAGE_SECOND_PASS_QUALITY,
            )
    except Exception as e:
        logger.error(f"Error compressing image {index + 1}: {e}", extra={"image_index": index})
        raise PreprocessError(index, str(e)) from e

    processed = PreprocessedImage(
        data=result,
        filename=filename,
        content_type="image/jpeg",
        original_size_bytes=original_size,
        compressed_size_bytes=len(result),
        compressed=True,
    )
    logger.info(
        f"Compressed {image.filename} from {original_size / MIB:.2f}MB to {len(result) / MIB:.2f}MB "
        f"({processed.compression_ratio}% reduction)",
        extra={
            "image_index": index,
            "original_size_bytes": original_size,
            "compressed_size_bytes": len(result),
        },
    )
    return processed


def preprocess_images(images: Sequence[RawImage]) -> List[PreprocessedImage]:
    """
    Normalize a submission. Exactly IMAGE_COUNT images are required and a
    failure on any one of them fails the whole batch.
    """
    if len(images) != settings.IMAGE_COUNT:
        raise InvalidInput(
            f"Exactly {settings.IMAGE_COUNT} images are required for 3D model generation, got {len(images)}"
        )
    return [preprocess_image(image, index) for index, image in enumerate(images)]
