# src/scanflow/derivatives.py
from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageOps

from .exceptions import EncodeError
from .models import ImageDerivative, OptimizeOptions, ProcessingResult, ProgressiveThumbnails
from .performance import PerformanceMonitor
from .utils import derivative_path, file_size_bytes

logger = logging.getLogger("scanflow")

ImageHandle = Union[str, Path]
ProgressFn = Callable[[int, int], None]

QUALITY_STEP = 0.15
QUALITY_FLOOR = 0.3
MAX_ATTEMPTS = 5

# name, width, height, quality; compression eases off as resolution grows
THUMBNAIL_SPECS: Tuple[Tuple[str, int, int, float], ...] = (
    ("low_res", 80, 80, 0.4),
    ("medium_res", 200, 200, 0.6),
    ("high_res", 400, 400, 0.7),
)

BATCH_SIZE = 3
BATCH_PAUSE_SECONDS = 0.05


# --- 0. Helpers ---

def calculate_optimal_dimensions(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """
    Fit (width, height) inside (max_width, max_height) keeping the aspect ratio.
    Only ever scales down.
    """
    if width <= 0 or height <= 0:
        raise EncodeError(f"Invalid image dimensions, {width}x{height}")
    scale = min(max_width / width, max_height / height, 1.0)
    if scale >= 1.0:
        return width, height
    return max(1, round(width * scale)), max(1, round(height * scale))


def read_image(path: ImageHandle) -> Image.Image:
    """Decode an image fully into memory as RGB, honoring EXIF orientation."""
    try:
        with Image.open(path) as im:
            im = ImageOps.exif_transpose(im)
            return im.convert("RGB")
    except Exception as e:
        raise EncodeError(f"Failed to read image {path}, {e}") from e


def encode_jpeg(img: Image.Image, out_path: Path, quality: float) -> ImageDerivative:
    """Write img as JPEG at a 0..1 quality and describe the result."""
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        img.save(out_path, format="JPEG", quality=max(1, min(95, int(round(quality * 100)))), optimize=True)
    except Exception as e:
        raise EncodeError(f"Failed to encode {out_path.name}, {e}") from e
    return ImageDerivative(path=out_path, width=img.width, height=img.height, size_bytes=file_size_bytes(out_path))


def passthrough_derivative(path: ImageHandle) -> ImageDerivative:
    """The original image described as a derivative. Dimensions are 0x0 if unreadable."""
    path = Path(path)
    width = height = 0
    try:
        with Image.open(path) as im:
            width, height = im.size
    except Exception as e:
        logger.warning("Could not read dimensions of %s, %s", path.name, e)
    return ImageDerivative(path=path, width=width, height=height, size_bytes=file_size_bytes(path))


def _render_thumbnail(source: Path, out_path: Path, width: int, height: int, quality: float) -> ImageDerivative:
    img = read_image(source)
    # Center-crop to fill, so the footprint is exact whatever the aspect ratio
    thumb = ImageOps.fit(img, (width, height), method=Image.Resampling.LANCZOS)
    return encode_jpeg(thumb, out_path, quality)


def _discard(derivative: Optional[ImageDerivative]) -> None:
    if derivative is None:
        return
    try:
        derivative.path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not remove superseded derivative %s", derivative.path)


# --- 1. Engine ---

class ImageDerivativeEngine:
    """
    Produces resized and recompressed copies of captured images: an upload
    payload under a byte budget, and fixed-footprint preview thumbnails.

    All public operations are coroutines. Pillow work runs in worker threads
    so the event loop keeps serving recognition requests meanwhile. None of
    them raise on image errors; they fall back to the original image.
    """

    def __init__(self, output_dir: Optional[Path] = None, monitor: Optional[PerformanceMonitor] = None,
                 batch_pause: float = BATCH_PAUSE_SECONDS):
        self.output_dir = Path(output_dir) if output_dir else Path(tempfile.gettempdir()) / "scanflow_derivatives"
        self.monitor = monitor or PerformanceMonitor(enabled=False)
        self.batch_pause = batch_pause

    # -----------------------------
    # Upload payload
    # -----------------------------
    async def optimize(self, image: ImageHandle, options: Optional[OptimizeOptions] = None) -> ProcessingResult:
        """
        Downscale to fit options.max_width x options.max_height, then re-encode
        with a fixed quality step until the file fits options.target_size_bytes.

        The search is linear and capped: at most MAX_ATTEMPTS encodes, never
        below QUALITY_FLOOR, even when options.quality asks for less. The
        returned derivative is never larger than the original file; when
        nothing smaller could be produced, or every encode failed, the
        original is returned unchanged.
        """
        opts = options or OptimizeOptions()
        source = Path(image)
        start = time.perf_counter()
        original_size = file_size_bytes(source)
        self.monitor.start(f"optimize:{source}", source=str(source))

        best: Optional[ImageDerivative] = None
        attempts = 0
        quality = max(QUALITY_FLOOR, opts.quality)
        used_quality: Optional[float] = None

        try:
            img = await asyncio.to_thread(read_image, source)
            target_w, target_h = calculate_optimal_dimensions(img.width, img.height, opts.max_width, opts.max_height)
            logger.debug("Optimizing %s, %dx%d -> %dx%d", source.name, img.width, img.height, target_w, target_h)
            if (target_w, target_h) != img.size:
                img = await asyncio.to_thread(img.resize, (target_w, target_h), Image.Resampling.LANCZOS)

            while attempts < MAX_ATTEMPTS:
                attempts += 1
                out_path = derivative_path(self.output_dir, source, f"opt-q{int(round(quality * 100))}")
                derivative = await asyncio.to_thread(encode_jpeg, img, out_path, quality)
                logger.debug(
                    "Optimization attempt %d, quality %.2f, %d bytes (target %d)",
                    attempts, quality, derivative.size_bytes, opts.target_size_bytes,
                )
                if best is None or derivative.size_bytes <= best.size_bytes:
                    _discard(best)
                    best, used_quality = derivative, quality
                else:
                    _discard(derivative)

                if derivative.size_bytes <= opts.target_size_bytes or quality <= QUALITY_FLOOR:
                    break
                quality = max(QUALITY_FLOOR, round(quality - QUALITY_STEP, 2))

        except EncodeError as e:
            logger.warning("Image optimization failed for %s after %d attempts, %s", source.name, attempts, e)

        if best is not None and original_size > 0 and best.size_bytes > original_size:
            logger.info("Optimized output for %s is larger than the original, keeping the original", source.name)
            _discard(best)
            best = None

        if best is None:
            derivative = await asyncio.to_thread(passthrough_derivative, source)
            used_quality = None
        else:
            derivative = best

        elapsed_ms = int(round((time.perf_counter() - start) * 1000))
        self.monitor.end(f"optimize:{source}", attempts=attempts, size_bytes=derivative.size_bytes)
        logger.info(
            "Optimized %s, %d -> %d bytes, %dx%d, %d attempts",
            source.name, original_size, derivative.size_bytes, derivative.width, derivative.height, attempts,
        )
        return ProcessingResult(
            derivative=derivative,
            original_size_bytes=original_size,
            processed_size_bytes=derivative.size_bytes,
            applied_enhancements=[],
            processing_time_ms=elapsed_ms,
            attempts=attempts,
            quality=used_quality,
        )

    async def optimize_many(self, images: Sequence[ImageHandle], options: Optional[OptimizeOptions] = None,
                            on_progress: Optional[ProgressFn] = None) -> List[ProcessingResult]:
        """Optimize one image after another, reporting (index, total) before each."""
        results: List[ProcessingResult] = []
        total = len(images)
        for i, image in enumerate(images):
            if on_progress:
                on_progress(i + 1, total)
            results.append(await self.optimize(image, options))
        return results

    # -----------------------------
    # Preview thumbnails
    # -----------------------------
    async def create_thumbnail(self, image: ImageHandle, width: int = 200, height: int = 200,
                               quality: float = 0.6) -> ImageDerivative:
        """One exact width x height thumbnail; the original image if it cannot be made."""
        source = Path(image)
        out_path = derivative_path(self.output_dir, source, f"thumb-{width}x{height}")
        try:
            return await asyncio.to_thread(_render_thumbnail, source, out_path, width, height, quality)
        except EncodeError as e:
            logger.warning("Thumbnail %dx%d failed for %s, using original, %s", width, height, source.name, e)
            return await asyncio.to_thread(passthrough_derivative, source)

    async def thumbnails(self, image: ImageHandle) -> ProgressiveThumbnails:
        """Low, medium and high resolution previews, rendered concurrently."""
        source = Path(image)
        self.monitor.start(f"thumbnails:{source}", source=str(source))
        low, medium, high = await asyncio.gather(
            *(self.create_thumbnail(source, w, h, q) for _, w, h, q in THUMBNAIL_SPECS)
        )
        self.monitor.end(f"thumbnails:{source}")
        logger.debug(
            "Progressive thumbnails for %s, %d/%d/%d bytes",
            source.name, low.size_bytes, medium.size_bytes, high.size_bytes,
        )
        return ProgressiveThumbnails(low_res=low, medium_res=medium, high_res=high)

    async def batch_thumbnails(self, images: Sequence[ImageHandle], width: int = 200, height: int = 200,
                               on_progress: Optional[ProgressFn] = None) -> List[ImageDerivative]:
        """
        Thumbnails for many images, BATCH_SIZE at a time. Images inside a batch
        are decoded concurrently; batches run one after another with a short
        pause to cap peak memory. on_progress gets (done, total) per batch.
        """
        results: List[ImageDerivative] = []
        total = len(images)
        logger.info("Creating %d thumbnails", total)
        for i in range(0, total, BATCH_SIZE):
            batch = images[i:i + BATCH_SIZE]
            results.extend(await asyncio.gather(*(self.create_thumbnail(p, width, height) for p in batch)))
            done = min(i + BATCH_SIZE, total)
            if on_progress:
                on_progress(done, total)
            logger.progress("thumbnails", extra={"phase": "thumbnails", "current": done, "total": total})
            if done < total:
                await asyncio.sleep(self.batch_pause)
        return results
