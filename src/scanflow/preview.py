# src/scanflow/preview.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .exceptions import ValidationError
from .models import ProgressiveThumbnails
from .performance import PerformanceMonitor

logger = logging.getLogger("scanflow")

MEDIUM_DELAY_SECONDS = 0.1
HIGH_DELAY_SECONDS = 0.3
LOADING_TIMEOUT_SECONDS = 5.0


class ProgressivePreviewController:
    """
    Decides which resolution of an image a viewer should display.

    The low-resolution preview is shown immediately on mount, the medium one
    after a short delay. The high-resolution (or full) image is only fetched
    when load_full_res_on_mount is set or request_high_res() is called, for
    example when the image scrolls into view.

    The renderer reports back through handle_load() and handle_error(). A
    failed load steps one rung down the ladder and cancels any pending
    upgrade, so a broken high-resolution image never loops.

    Only low is required. Missing resolutions are left out of the ladder, so
    the top rung is the best URI actually given.

    Timers run on the asyncio event loop; mount() and request_high_res()
    must be called from a running loop.
    """

    def __init__(
        self,
        low: str,
        medium: Optional[str] = None,
        high: Optional[str] = None,
        full: Optional[str] = None,
        *,
        load_full_res_on_mount: bool = False,
        medium_delay: float = MEDIUM_DELAY_SECONDS,
        high_delay: float = HIGH_DELAY_SECONDS,
        loading_timeout: float = LOADING_TIMEOUT_SECONDS,
        on_change: Optional[Callable[[str], None]] = None,
        on_load_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
        monitor: Optional[PerformanceMonitor] = None,
    ):
        self.ladder: List[str] = [uri for uri in (low, medium, high, full) if uri]
        if not self.ladder:
            raise ValidationError("At least one image URI is required")
        self.medium = medium or None
        self.load_full_res_on_mount = load_full_res_on_mount
        self.medium_delay = medium_delay
        self.high_delay = high_delay
        self.loading_timeout = loading_timeout
        self.on_change = on_change
        self.on_load_complete = on_load_complete
        self.on_error = on_error
        self.monitor = monitor or PerformanceMonitor(enabled=False)

        self.current_uri: Optional[str] = None
        self.loaded = False
        self.is_loading = False

        self._mounted = False
        self._fell_back = False
        self._upgrades: Dict[str, asyncio.TimerHandle] = {}
        self._timeout: Optional[asyncio.TimerHandle] = None
        self._timing: Optional[str] = None

    @classmethod
    def from_thumbnails(cls, thumbs: ProgressiveThumbnails, full: Optional[str] = None,
                        **kwargs) -> "ProgressivePreviewController":
        return cls(thumbs.low_res.uri, thumbs.medium_res.uri, thumbs.high_res.uri, full, **kwargs)

    @property
    def top_uri(self) -> str:
        return self.ladder[-1]

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._fell_back = False
        self._show(self.ladder[0])
        if self.medium:
            self._schedule("medium", self.medium_delay, self.medium)
        if self.load_full_res_on_mount and len(self.ladder) > 1:
            self._schedule("high", self.high_delay, self.top_uri)

    def request_high_res(self) -> None:
        """Visibility trigger: fetch the best available resolution."""
        if not self._mounted or self._fell_back:
            return
        if "high" in self._upgrades or self._rung(self.current_uri) >= len(self.ladder) - 1:
            return
        logger.debug("High resolution requested for %s", self.top_uri)
        self._schedule("high", self.high_delay, self.top_uri)

    def unmount(self) -> None:
        self._mounted = False
        self._cancel_upgrades()
        self._cancel_timeout()

    # -----------------------------
    # Renderer callbacks
    # -----------------------------
    def handle_load(self, uri: str) -> None:
        if uri != self.current_uri:
            return
        self.loaded = True
        self.is_loading = False
        self._cancel_timeout()
        self._end_timing()
        if self.on_load_complete:
            self.on_load_complete(uri)

    def handle_error(self, uri: str, error: str = "Failed to load image") -> None:
        if uri != self.current_uri:
            return
        self._end_timing(error=error)
        self._cancel_upgrades()
        self._fell_back = True
        rung = self._rung(uri)
        logger.warning("Image failed to load, %s, %s", uri, error)
        if self.on_error:
            self.on_error(uri, error)
        if rung <= 0:
            self.is_loading = False
            self._cancel_timeout()
            return
        self._show(self.ladder[rung - 1])

    # -----------------------------
    # Internals
    # -----------------------------
    def _rung(self, uri: Optional[str]) -> int:
        try:
            return self.ladder.index(uri)
        except ValueError:
            return -1

    def _schedule(self, key: str, delay: float, uri: str) -> None:
        loop = asyncio.get_running_loop()
        self._upgrades[key] = loop.call_later(delay, self._upgrade, key, uri)

    def _upgrade(self, key: str, uri: str) -> None:
        self._upgrades.pop(key, None)
        if not self._mounted or self._fell_back:
            return
        if self._rung(uri) <= self._rung(self.current_uri):
            return
        self._show(uri)

    def _show(self, uri: str) -> None:
        self._end_timing()
        self.current_uri = uri
        self.loaded = False
        self.is_loading = True
        self._timing = f"image_load:{uri}"
        self.monitor.start(self._timing, uri=uri)
        self._restart_timeout()
        if self.on_change:
            self.on_change(uri)

    def _restart_timeout(self) -> None:
        self._cancel_timeout()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timeout = loop.call_later(self.loading_timeout, self._on_timeout)

    def _on_timeout(self) -> None:
        self._timeout = None
        if self.is_loading:
            logger.warning("Image loading timed out, %s", self.current_uri)
            self.is_loading = False

    def _cancel_upgrades(self) -> None:
        for handle in self._upgrades.values():
            handle.cancel()
        self._upgrades.clear()

    def _cancel_timeout(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _end_timing(self, **metadata) -> None:
        if self._timing is not None:
            self.monitor.end(self._timing, **metadata)
            self._timing = None
