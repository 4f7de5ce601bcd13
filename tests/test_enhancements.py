import asyncio

import numpy as np
import pytest

from scanflow.enhancements import (
    BORDER_DETECTION,
    CONTRAST_ENHANCEMENT,
    GLARE_REMOVAL,
    PERSPECTIVE_CORRECTION,
    SHARPENING,
    EnhancementRegistry,
    EnhancementStep,
    order_corners,
)
from scanflow.exceptions import ValidationError
from scanflow.models import DocumentBounds, Point, ProcessingOptions


class InvertStep(EnhancementStep):
    def apply(self, image, context):
        return 255 - image


class FixedBoundsStep(EnhancementStep):
    def __init__(self, confidence):
        self.confidence = confidence

    def apply(self, image, context):
        context.bounds = DocumentBounds(
            top_left=Point(120, 80), top_right=Point(700, 110),
            bottom_left=Point(100, 520), bottom_right=Point(680, 540),
            confidence=self.confidence,
        )
        return image


class ExplodingStep(EnhancementStep):
    def apply(self, image, context):
        raise RuntimeError("provider crashed")


def test_default_slots_in_order():
    assert EnhancementRegistry().names() == [
        "Border Detection",
        "Perspective Correction",
        "Glare Removal",
        "Shadow Removal",
        "Contrast Enhancement",
        "Sharpening",
    ]


def test_order_corners():
    pts = np.array([[10, 90], [90, 10], [10, 10], [90, 90]], dtype=np.float32)
    tl, tr, br, bl = order_corners(pts)
    assert tuple(tl) == (10, 10)
    assert tuple(tr) == (90, 10)
    assert tuple(br) == (90, 90)
    assert tuple(bl) == (10, 90)


def test_document_photo_is_detected_and_rectified(tmp_path, document_photo):
    registry = EnhancementRegistry(output_dir=tmp_path / "out")
    options = ProcessingOptions(glare_removal=False, shadow_removal=False, contrast_enhancement=False,
                                sharpening=False)

    result = asyncio.run(registry.process(document_photo, options))

    assert result.applied_enhancements == [BORDER_DETECTION, PERSPECTIVE_CORRECTION]
    bounds = result.document_bounds
    assert bounds is not None and bounds.confidence >= 0.7
    assert bounds.top_left.x < 200 and bounds.top_left.y < 150
    assert bounds.bottom_right.x > 600 and bounds.bottom_right.y > 450
    # cropped to the page, not the whole frame
    assert 500 < result.derivative.width < 700
    assert result.derivative.path.parent == tmp_path / "out"
    assert result.quality == 0.9


@pytest.mark.parametrize("confidence, expected", [
    (0.5, [BORDER_DETECTION]),
    (0.9, [BORDER_DETECTION, PERSPECTIVE_CORRECTION]),
])
def test_perspective_correction_needs_confident_bounds(tmp_path, document_photo, confidence, expected):
    registry = EnhancementRegistry(output_dir=tmp_path / "out")
    registry.replace(BORDER_DETECTION, FixedBoundsStep(confidence))
    options = ProcessingOptions(glare_removal=False, shadow_removal=False, contrast_enhancement=False,
                                sharpening=False)

    result = asyncio.run(registry.process(document_photo, options))

    assert result.applied_enhancements == expected
    assert result.document_bounds.confidence == confidence


def test_uniform_image_gets_no_enhancements(tmp_path, make_image):
    source = make_image("flat.png", size=(300, 200), noise=False)

    result = asyncio.run(EnhancementRegistry(output_dir=tmp_path / "out").process(source))

    assert result.applied_enhancements == []
    assert result.document_bounds is None
    assert result.derivative.path != source


def test_disabled_steps_are_never_reported(tmp_path, document_photo):
    result = asyncio.run(
        EnhancementRegistry(output_dir=tmp_path / "out").process(document_photo, ProcessingOptions.quick())
    )

    assert set(result.applied_enhancements) <= {BORDER_DETECTION, CONTRAST_ENHANCEMENT}
    assert PERSPECTIVE_CORRECTION not in result.applied_enhancements


def test_replace_keeps_slot_position(tmp_path, make_image):
    registry = EnhancementRegistry(output_dir=tmp_path / "out")
    registry.replace(SHARPENING, InvertStep())
    assert registry.names()[-1] == SHARPENING
    assert isinstance(registry.get(SHARPENING), InvertStep)

    source = make_image("flat.png", size=(120, 80), noise=False)
    result = asyncio.run(registry.process(source))
    assert result.applied_enhancements == [SHARPENING]


def test_replace_unknown_slot():
    with pytest.raises(ValidationError):
        EnhancementRegistry().replace("Denoise", InvertStep())


def test_crashing_step_is_skipped(tmp_path, make_image):
    registry = EnhancementRegistry(output_dir=tmp_path / "out")
    registry.replace(GLARE_REMOVAL, ExplodingStep())
    source = make_image("flat.png", size=(120, 80), noise=False)

    result = asyncio.run(registry.process(source))

    assert GLARE_REMOVAL not in result.applied_enhancements


def test_unreadable_image_passes_through(tmp_path):
    source = tmp_path / "broken.jpg"
    source.write_bytes(b"\x00\x01")

    result = asyncio.run(EnhancementRegistry(output_dir=tmp_path / "out").process(source))

    assert result.derivative.path == source
    assert result.applied_enhancements == []
    assert result.quality is None


def test_batch_process_reports_each_image(tmp_path, make_image):
    images = [make_image(f"f{i}.png", size=(60, 40), noise=False) for i in range(3)]
    registry = EnhancementRegistry(output_dir=tmp_path / "out", batch_pause=0)
    seen = []

    results = asyncio.run(registry.batch_process(images, on_progress=lambda i, n, p: seen.append((i, n, p.name))))

    assert len(results) == 3
    assert seen == [(1, 3, "f0.png"), (2, 3, "f1.png"), (3, 3, "f2.png")]


def test_preview_returns_bounds_and_low_quality_copy(tmp_path, document_photo):
    derivative, bounds = asyncio.run(EnhancementRegistry(output_dir=tmp_path / "out").preview(document_photo))

    assert bounds is not None
    assert derivative.path.suffix == ".jpg"
    assert (derivative.width, derivative.height) == (800, 600)


def test_validate_flags_small_flat_capture(tmp_path, make_image):
    source = make_image("small.png", size=(200, 150), noise=False)

    validation = asyncio.run(EnhancementRegistry().validate(source))

    assert not validation.is_valid
    assert "Low resolution" in validation.issues
    assert "Very small file size" in validation.issues
    assert "Document borders not clearly detected" in validation.issues
    assert validation.recommendations
