"""Shared fixtures: generated images and an in-memory recognizer."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pytest
from PIL import Image

from scanflow.models import Language


class FakeRecognizer:
    """
    Stands in for RecognitionClient. Texts and errors are keyed by image file
    name; a gate (asyncio.Event) holds that image's request until it is set.
    """

    def __init__(self, texts: Optional[Dict[str, str]] = None, errors: Optional[Dict[str, Exception]] = None,
                 gates: Optional[Dict[str, asyncio.Event]] = None, delay: float = 0.0):
        self.texts = texts or {}
        self.errors = errors or {}
        self.gates = gates or {}
        self.delay = delay
        self.calls: List[str] = []
        self.languages: List[Language] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def recognize_async(self, image, language=Language.AUTO, on_progress=None) -> str:
        name = Path(image).name
        self.calls.append(name)
        self.languages.append(language)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if on_progress:
                on_progress("Converting image to base64...")
            gate = self.gates.get(name)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(self.delay)
            if on_progress:
                on_progress("Sending to AI for text extraction...")
            if name in self.errors:
                raise self.errors[name]
            return self.texts.get(name, f"text of {name}")
        finally:
            self.in_flight -= 1

    def close(self) -> None:
        self.closed = True


class ListSink:
    def __init__(self):
        self.saved: List[Tuple[Path, str]] = []

    def save(self, image: Path, text: str) -> None:
        self.saved.append((Path(image), text))


@pytest.fixture(autouse=True)
def _reset_scanflow_logger():
    yield
    log = logging.getLogger("scanflow")
    log.handlers.clear()
    log.propagate = True
    log.setLevel(logging.NOTSET)


@pytest.fixture
def make_image(tmp_path):
    """Factory writing an RGB image. noise=True makes it hard to compress."""

    def _make(name: str = "img.png", size: Tuple[int, int] = (640, 480), noise: bool = True,
              color: Tuple[int, int, int] = (128, 128, 128), **save_kwargs) -> Path:
        width, height = size
        if noise:
            rng = np.random.default_rng(0)
            arr = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
            img = Image.fromarray(arr, "RGB")
        else:
            img = Image.new("RGB", size, color)
        path = tmp_path / name
        img.save(path, **save_kwargs)
        return path

    return _make


@pytest.fixture
def document_photo(tmp_path):
    """A bright, slightly skewed page on a dark table."""
    import cv2

    canvas = np.full((600, 800, 3), 30, dtype=np.uint8)
    quad = np.array([[120, 80], [700, 110], [680, 540], [100, 520]], dtype=np.int32)
    cv2.fillPoly(canvas, [quad], (235, 235, 235))
    for y in range(150, 480, 40):
        cv2.line(canvas, (180, y), (600, y + 10), (40, 40, 40), 3)
    path = tmp_path / "page.png"
    Image.fromarray(cv2.cvtColor(canvas, cv2.COLOR_BGR2RGB)).save(path)
    return path


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer()


@pytest.fixture
def sink():
    return ListSink()
