# src/scanflow/enhancements.py
from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from .derivatives import encode_jpeg, passthrough_derivative, read_image
from .exceptions import EncodeError, ValidationError
from .models import (
    DocumentBounds,
    ImageDerivative,
    ImageValidation,
    Point,
    ProcessingOptions,
    ProcessingResult,
)
from .performance import PerformanceMonitor
from .utils import derivative_path, file_size_bytes

logger = logging.getLogger("scanflow")

BORDER_DETECTION = "Border Detection"
PERSPECTIVE_CORRECTION = "Perspective Correction"
GLARE_REMOVAL = "Glare Removal"
SHADOW_REMOVAL = "Shadow Removal"
CONTRAST_ENHANCEMENT = "Contrast Enhancement"
SHARPENING = "Sharpening"

MIN_PERSPECTIVE_CONFIDENCE = 0.7
MIN_VALID_BORDER_CONFIDENCE = 0.6


@dataclass
class StepContext:
    """Shared state handed from one step to the next within a single run."""
    options: ProcessingOptions
    source: Optional[Path] = None
    bounds: Optional[DocumentBounds] = None


# --- Step 1, interface ---
class EnhancementStep(ABC):
    """
    One named, toggleable image-improvement slot.

    apply() returns the new BGR image, or None when the step decides it
    cannot safely improve this image. Only steps that return an image are
    reported as applied.
    """
    name: str = ""
    option: str = ""  # ProcessingOptions flag that enables the step

    @abstractmethod
    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


# --- Step 2, default providers ---
def order_corners(pts: np.ndarray) -> np.ndarray:
    """Order 4 points as top-left, top-right, bottom-right, bottom-left."""
    pts = pts.reshape(4, 2).astype(np.float32)
    s = pts.sum(axis=1)
    d = np.diff(pts, axis=1).ravel()  # y - x
    return np.array([pts[np.argmin(s)], pts[np.argmin(d)], pts[np.argmax(s)], pts[np.argmax(d)]], dtype=np.float32)


class BorderDetectionStep(EnhancementStep):
    """
    Finds the largest convex quadrilateral in the edge map. Confidence grows
    with how much of the frame it covers and how rectangular it is.
    The image itself is not changed; the bounds go into the context.
    """
    name = BORDER_DETECTION
    option = "border_detection"

    def __init__(self, work_size: int = 500, min_area_ratio: float = 0.1, full_coverage_ratio: float = 0.4):
        self.work_size = work_size
        self.min_area_ratio = min_area_ratio
        self.full_coverage_ratio = full_coverage_ratio

    def detect(self, image: np.ndarray) -> Optional[DocumentBounds]:
        h, w = image.shape[:2]
        scale = min(1.0, self.work_size / float(max(h, w)))
        small = cv2.resize(image, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA) if scale < 1.0 else image

        gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
        gray = cv2.GaussianBlur(gray, (5, 5), 0)
        edges = cv2.Canny(gray, 50, 150)
        edges = cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=1)
        contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

        frame_area = float(small.shape[0] * small.shape[1])
        for contour in sorted(contours, key=cv2.contourArea, reverse=True)[:10]:
            perimeter = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, 0.02 * perimeter, True)
            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue
            area = cv2.contourArea(approx)
            if area < self.min_area_ratio * frame_area:
                break

            (_, (rw, rh), _) = cv2.minAreaRect(approx)
            rectangularity = area / (rw * rh) if rw * rh > 0 else 0.0
            coverage = min(1.0, (area / frame_area) / self.full_coverage_ratio)
            confidence = float(np.clip(0.4 + 0.6 * coverage * rectangularity, 0.0, 1.0))

            tl, tr, br, bl = order_corners(approx) / scale
            return DocumentBounds(
                top_left=Point(float(tl[0]), float(tl[1])),
                top_right=Point(float(tr[0]), float(tr[1])),
                bottom_left=Point(float(bl[0]), float(bl[1])),
                bottom_right=Point(float(br[0]), float(br[1])),
                confidence=round(confidence, 3),
            )
        return None

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        bounds = self.detect(image)
        if bounds is None:
            logger.debug("No document quadrilateral found")
            return None
        context.bounds = bounds
        logger.debug("Document borders detected, confidence %.2f", bounds.confidence)
        return image


class PerspectiveCorrectionStep(EnhancementStep):
    name = PERSPECTIVE_CORRECTION
    option = "perspective_correction"

    def __init__(self, min_confidence: float = MIN_PERSPECTIVE_CONFIDENCE):
        self.min_confidence = min_confidence

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        bounds = context.bounds
        if bounds is None or bounds.confidence < self.min_confidence:
            logger.debug("Skipping perspective correction, low confidence bounds")
            return None

        src = np.array([[p.x, p.y] for p in bounds.corners()], dtype=np.float32)
        tl, tr, br, bl = src
        out_w = int(round(max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl))))
        out_h = int(round(max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl))))
        if out_w < 2 or out_h < 2:
            return None

        dst = np.array([[0, 0], [out_w - 1, 0], [out_w - 1, out_h - 1], [0, out_h - 1]], dtype=np.float32)
        matrix = cv2.getPerspectiveTransform(src, dst)
        return cv2.warpPerspective(image, matrix, (out_w, out_h), flags=cv2.INTER_LINEAR)


class GlareRemovalStep(EnhancementStep):
    """
    Inpaints small blown-out highlights. A frame with no saturated pixels,
    or with so many that they are the page itself, is left alone.
    """
    name = GLARE_REMOVAL
    option = "glare_removal"

    def __init__(self, threshold: int = 250, min_ratio: float = 0.0005, max_ratio: float = 0.25):
        self.threshold = threshold
        self.min_ratio = min_ratio
        self.max_ratio = max_ratio

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        mask = (gray >= self.threshold).astype(np.uint8) * 255
        ratio = float(np.count_nonzero(mask)) / mask.size
        if ratio < self.min_ratio or ratio > self.max_ratio:
            return None
        mask = cv2.dilate(mask, np.ones((5, 5), np.uint8), iterations=1)
        return cv2.inpaint(image, mask, 3, cv2.INPAINT_TELEA)


class ShadowRemovalStep(EnhancementStep):
    """Divides out a smooth background estimate when illumination is uneven."""
    name = SHADOW_REMOVAL
    option = "shadow_removal"

    def __init__(self, min_background_std: float = 8.0, kernel: int = 7, blur: int = 21):
        self.min_background_std = min_background_std
        self.kernel = kernel
        self.blur = blur

    def _background(self, plane: np.ndarray) -> np.ndarray:
        dilated = cv2.dilate(plane, np.ones((self.kernel, self.kernel), np.uint8))
        return cv2.medianBlur(dilated, self.blur)

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if float(self._background(gray).std()) < self.min_background_std:
            return None

        planes = []
        for plane in cv2.split(image):
            background = self._background(plane)
            diff = 255 - cv2.absdiff(plane, background)
            planes.append(cv2.normalize(diff, None, 0, 255, cv2.NORM_MINMAX))
        return cv2.merge(planes)


class ContrastEnhancementStep(EnhancementStep):
    """CLAHE on the lightness channel."""
    name = CONTRAST_ENHANCEMENT
    option = "contrast_enhancement"

    def __init__(self, clip_limit: float = 2.0, tile_grid: Tuple[int, int] = (8, 8)):
        self.clip_limit = clip_limit
        self.tile_grid = tile_grid

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
        lightness, a, b = cv2.split(lab)
        if float(lightness.std()) < 1.0:
            return None
        clahe = cv2.createCLAHE(clipLimit=self.clip_limit, tileGridSize=self.tile_grid)
        return cv2.cvtColor(cv2.merge((clahe.apply(lightness), a, b)), cv2.COLOR_LAB2BGR)


class SharpeningStep(EnhancementStep):
    """Unsharp mask."""
    name = SHARPENING
    option = "sharpening"

    def __init__(self, sigma: float = 3.0, amount: float = 0.5):
        self.sigma = sigma
        self.amount = amount

    def apply(self, image: np.ndarray, context: StepContext) -> Optional[np.ndarray]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if float(cv2.Laplacian(gray, cv2.CV_64F).var()) == 0.0:
            return None
        blurred = cv2.GaussianBlur(image, (0, 0), self.sigma)
        return cv2.addWeighted(image, 1.0 + self.amount, blurred, -self.amount, 0)


def default_steps() -> List[EnhancementStep]:
    return [
        BorderDetectionStep(),
        PerspectiveCorrectionStep(),
        GlareRemovalStep(),
        ShadowRemovalStep(),
        ContrastEnhancementStep(),
        SharpeningStep(),
    ]


def _to_bgr(img: Image.Image) -> np.ndarray:
    return cv2.cvtColor(np.asarray(img), cv2.COLOR_RGB2BGR)


def _to_pil(arr: np.ndarray) -> Image.Image:
    return Image.fromarray(cv2.cvtColor(arr, cv2.COLOR_BGR2RGB))


# --- Step 3, registry ---
class EnhancementRegistry:
    """
    The ordered enhancement pipeline. Steps run in registration order; each
    can be disabled through ProcessingOptions or swapped with replace().
    """

    def __init__(self, steps: Optional[Iterable[EnhancementStep]] = None, output_dir: Optional[Path] = None,
                 monitor: Optional[PerformanceMonitor] = None, batch_pause: float = 0.1):
        self._steps: List[EnhancementStep] = list(steps) if steps is not None else default_steps()
        self.output_dir = Path(output_dir) if output_dir else Path(tempfile.gettempdir()) / "scanflow_derivatives"
        self.monitor = monitor or PerformanceMonitor(enabled=False)
        self.batch_pause = batch_pause

    def steps(self) -> List[EnhancementStep]:
        return list(self._steps)

    def names(self) -> List[str]:
        return [s.name for s in self._steps]

    def get(self, name: str) -> Optional[EnhancementStep]:
        return next((s for s in self._steps if s.name == name), None)

    def replace(self, name: str, step: EnhancementStep) -> None:
        """Swap the provider for a named slot, keeping its position."""
        for i, existing in enumerate(self._steps):
            if existing.name == name:
                if not step.name:
                    step.name = name
                if not step.option:
                    step.option = existing.option
                self._steps[i] = step
                return
        raise ValidationError(f"Unknown enhancement step, {name!r}. Known steps, {self.names()}")

    # -----------------------------
    # Synchronous core, runs in a worker thread
    # -----------------------------
    def run(self, image: Union[str, Path], options: Optional[ProcessingOptions] = None) -> ProcessingResult:
        opts = options or ProcessingOptions()
        source = Path(image)
        start = time.perf_counter()
        original_size = file_size_bytes(source)
        applied: List[str] = []
        context = StepContext(options=opts, source=source)

        try:
            current = _to_bgr(read_image(source))
            for step in self._steps:
                if not getattr(opts, step.option, False):
                    logger.debug("Skipping %s, disabled", step.name)
                    continue
                try:
                    out = step.apply(current, context)
                except Exception as e:
                    logger.warning("%s failed on %s, skipping, %s", step.name, source.name, e)
                    continue
                if out is None:
                    logger.debug("Skipping %s, no safe improvement", step.name)
                    continue
                current = out
                applied.append(step.name)

            out_path = derivative_path(self.output_dir, source, "enhanced")
            derivative = encode_jpeg(_to_pil(current), out_path, opts.quality)
        except EncodeError as e:
            logger.error("Document processing failed for %s, returning original, %s", source.name, e)
            derivative = passthrough_derivative(source)
            applied = []
            context.bounds = None

        elapsed_ms = int(round((time.perf_counter() - start) * 1000))
        logger.info(
            "Processed %s in %dms, %d -> %d bytes, enhancements, %s",
            source.name, elapsed_ms, original_size, derivative.size_bytes, ", ".join(applied) or "none",
        )
        return ProcessingResult(
            derivative=derivative,
            original_size_bytes=original_size,
            processed_size_bytes=derivative.size_bytes,
            applied_enhancements=applied,
            document_bounds=context.bounds,
            processing_time_ms=elapsed_ms,
            quality=None if derivative.path == source else opts.quality,
        )

    def detect_bounds(self, image: np.ndarray, options: Optional[ProcessingOptions] = None) -> Optional[DocumentBounds]:
        """Run only the border-detection slot, whatever provider fills it."""
        step = self.get(BORDER_DETECTION)
        if step is None:
            return None
        context = StepContext(options=options or ProcessingOptions())
        try:
            step.apply(image, context)
        except Exception as e:
            logger.warning("Border detection failed, %s", e)
            return None
        return context.bounds

    # -----------------------------
    # Async entry points
    # -----------------------------
    async def process(self, image: Union[str, Path], options: Optional[ProcessingOptions] = None) -> ProcessingResult:
        source = Path(image)
        return await self.monitor.measure_async(
            f"enhance:{source}", lambda: asyncio.to_thread(self.run, source, options), source=str(source)
        )

    async def batch_process(self, images: List[Union[str, Path]], options: Optional[ProcessingOptions] = None,
                            on_progress: Optional[Callable[[int, int, Path], None]] = None) -> List[ProcessingResult]:
        results: List[ProcessingResult] = []
        total = len(images)
        for i, image in enumerate(images):
            if on_progress:
                on_progress(i + 1, total, Path(image))
            results.append(await self.process(image, options))
            if i < total - 1:
                await asyncio.sleep(self.batch_pause)
        return results

    async def preview(self, image: Union[str, Path]) -> Tuple[ImageDerivative, Optional[DocumentBounds]]:
        """Fast camera-preview pass: bounds only, plus a low quality copy."""
        source = Path(image)

        def _preview() -> Tuple[ImageDerivative, Optional[DocumentBounds]]:
            try:
                img = read_image(source)
                bounds = self.detect_bounds(_to_bgr(img))
                return encode_jpeg(img, derivative_path(self.output_dir, source, "preview"), 0.6), bounds
            except EncodeError as e:
                logger.warning("Preview processing failed for %s, %s", source.name, e)
                return passthrough_derivative(source), None

        return await asyncio.to_thread(_preview)

    async def validate(self, image: Union[str, Path]) -> ImageValidation:
        """Check whether a capture looks usable for document processing."""
        source = Path(image)

        def _validate() -> ImageValidation:
            issues: List[str] = []
            recommendations: List[str] = []
            try:
                img = read_image(source)
            except EncodeError as e:
                logger.warning("Validation could not read %s, %s", source.name, e)
                return ImageValidation(False, ["Failed to analyze image"], ["Try taking a new photo"])

            width, height = img.size
            if width < 800 or height < 600:
                issues.append("Low resolution")
                recommendations.append("Use a higher resolution camera or move closer to the document")
            aspect = width / height
            if aspect < 0.5 or aspect > 2.0:
                issues.append("Unusual aspect ratio")
                recommendations.append("Ensure the entire document is visible in the frame")
            if file_size_bytes(source) < 50 * 1024:
                issues.append("Very small file size")
                recommendations.append("Check image quality settings")
            bounds = self.detect_bounds(_to_bgr(img))
            if bounds is None or bounds.confidence < MIN_VALID_BORDER_CONFIDENCE:
                issues.append("Document borders not clearly detected")
                recommendations.append("Ensure good lighting and clear document edges")
            return ImageValidation(is_valid=not issues, issues=issues, recommendations=recommendations)

        return await asyncio.to_thread(_validate)
