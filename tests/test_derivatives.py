import asyncio

import pytest
from PIL import Image

import scanflow.derivatives as derivatives
from scanflow.derivatives import (
    MAX_ATTEMPTS,
    QUALITY_FLOOR,
    ImageDerivativeEngine,
    calculate_optimal_dimensions,
)
from scanflow.exceptions import ValidationError
from scanflow.models import ImageDerivative, OptimizeOptions


@pytest.mark.parametrize(
    "size, expected",
    [
        ((4000, 3000), (1920, 1440)),
        ((1000, 3000), (640, 1920)),
        ((800, 600), (800, 600)),
    ],
)
def test_calculate_optimal_dimensions_only_scales_down(size, expected):
    assert calculate_optimal_dimensions(*size, 1920, 1920) == expected


def test_optimize_options_validation():
    with pytest.raises(ValidationError):
        OptimizeOptions(quality=0)
    with pytest.raises(ValidationError):
        OptimizeOptions(target_size_bytes=0)
    doc = OptimizeOptions.document()
    assert (doc.max_width, doc.quality, doc.target_size_bytes) == (1600, 0.85, 600 * 1024)


def test_large_capture_is_capped_and_searched_within_bounds(tmp_path, make_image):
    source = make_image("big.jpg", size=(2400, 1600), quality=95)
    engine = ImageDerivativeEngine(output_dir=tmp_path / "out")

    result = asyncio.run(engine.optimize(source))

    d = result.derivative
    assert d.width <= 1920 and d.height <= 1920
    assert d.width == 1920 and d.height == 1280
    assert 1 <= result.attempts <= MAX_ATTEMPTS
    assert result.quality is not None and result.quality >= QUALITY_FLOOR
    assert d.size_bytes <= result.original_size_bytes
    assert d.size_bytes <= 800 * 1024 or result.attempts == MAX_ATTEMPTS or result.quality == QUALITY_FLOOR
    # superseded attempts are cleaned up
    assert list((tmp_path / "out").iterdir()) == [d.path]


def test_quality_search_steps_down_to_the_floor(tmp_path, make_image, monkeypatch):
    source = make_image("photo.png", size=(300, 200))
    qualities = []

    def huge_encode(img, out_path, quality):
        qualities.append(quality)
        return ImageDerivative(path=out_path, width=img.width, height=img.height, size_bytes=10 ** 9)

    monkeypatch.setattr(derivatives, "encode_jpeg", huge_encode)
    result = asyncio.run(ImageDerivativeEngine(output_dir=tmp_path / "out").optimize(source))

    assert qualities == [0.8, 0.65, 0.5, 0.35, 0.3]
    assert result.attempts == MAX_ATTEMPTS
    # nothing smaller than the original was produced
    assert result.derivative.path == source
    assert result.quality is None


def test_requested_quality_below_the_floor_is_raised_to_it(tmp_path, make_image, monkeypatch):
    source = make_image("photo.png", size=(300, 200))
    qualities = []

    def tiny_encode(img, out_path, quality):
        qualities.append(quality)
        return ImageDerivative(path=out_path, width=img.width, height=img.height, size_bytes=10)

    monkeypatch.setattr(derivatives, "encode_jpeg", tiny_encode)
    result = asyncio.run(
        ImageDerivativeEngine(output_dir=tmp_path / "out").optimize(
            source, OptimizeOptions(quality=0.2, target_size_bytes=1)
        )
    )

    assert qualities == [QUALITY_FLOOR]
    assert result.quality == QUALITY_FLOOR
    assert result.attempts == 1


def test_very_large_capture_fits_the_default_box(tmp_path, make_image):
    source = make_image("tall.jpg", size=(3000, 4000), quality=90)
    options = OptimizeOptions(max_width=1920, max_height=1920, quality=0.8, target_size_bytes=800 * 1024)

    result = asyncio.run(ImageDerivativeEngine(output_dir=tmp_path / "out").optimize(source, options))

    d = result.derivative
    assert max(d.width, d.height) <= 1920
    assert (d.width, d.height) == (1440, 1920)
    assert 1 <= result.attempts <= MAX_ATTEMPTS
    assert d.size_bytes <= result.original_size_bytes


def test_output_is_never_larger_than_input(tmp_path, make_image):
    source = make_image("tiny.jpg", size=(200, 200), quality=5)
    original_size = source.stat().st_size

    result = asyncio.run(
        ImageDerivativeEngine(output_dir=tmp_path / "out").optimize(source, OptimizeOptions(quality=0.95))
    )

    assert result.derivative.path == source
    assert result.processed_size_bytes == original_size
    assert result.compression_ratio == 1.0


def test_unreadable_image_passes_through(tmp_path):
    source = tmp_path / "broken.jpg"
    source.write_bytes(b"not an image")

    result = asyncio.run(ImageDerivativeEngine(output_dir=tmp_path / "out").optimize(source))

    assert result.derivative.path == source
    assert result.derivative.width == 0
    assert result.processed_size_bytes == len(b"not an image")


def test_progressive_thumbnails_have_exact_sizes(tmp_path, make_image):
    engine = ImageDerivativeEngine(output_dir=tmp_path / "thumbs")
    for source in (make_image("wide.png", size=(640, 480)), make_image("tall.png", size=(300, 900))):
        thumbs = asyncio.run(engine.thumbnails(source))
        for derivative, side in ((thumbs.low_res, 80), (thumbs.medium_res, 200), (thumbs.high_res, 400)):
            assert (derivative.width, derivative.height) == (side, side)
            with Image.open(derivative.path) as im:
                assert im.size == (side, side)


def test_failed_thumbnail_falls_back_to_original(tmp_path):
    source = tmp_path / "broken.png"
    source.write_bytes(b"garbage")

    thumb = asyncio.run(ImageDerivativeEngine(output_dir=tmp_path / "t").create_thumbnail(source, 80, 80, 0.4))

    assert thumb.path == source


def test_batch_thumbnails_report_progress_per_batch(tmp_path, make_image):
    images = [make_image(f"i{i}.png", size=(120, 90), noise=False) for i in range(7)]
    progress = []
    engine = ImageDerivativeEngine(output_dir=tmp_path / "t", batch_pause=0)

    thumbs = asyncio.run(engine.batch_thumbnails(images, 50, 40, on_progress=lambda d, t: progress.append((d, t))))

    assert progress == [(3, 7), (6, 7), (7, 7)]
    assert len(thumbs) == 7
    assert all((t.width, t.height) == (50, 40) for t in thumbs)
