# src/scanflow/pipeline.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Union

from .config import PipelineConfig
from .derivatives import ImageDerivativeEngine
from .enhancements import EnhancementRegistry
from .models import (
    DocumentPage,
    Language,
    PageRunSummary,
    ProcessingResult,
    ProgressiveThumbnails,
    RecognitionResult,
    RecognitionTask,
)
from .multipage import MultiPageCoordinator, PageProgressFn
from .performance import PerformanceMonitor
from .recognition import RecognitionClient, Recognizer
from .workers import RecognitionWorkerManager

logger = logging.getLogger("scanflow")


class DocumentSink(Protocol):
    """Where recognized documents end up, e.g. a database or a folder of text files."""

    def save(self, image: Path, text: str) -> None:
        ...


@dataclass
class CaptureOutcome:
    """Everything produced for one captured image."""
    task_id: str
    optimized: ProcessingResult
    thumbnails: ProgressiveThumbnails
    result: RecognitionResult
    enhanced: Optional[ProcessingResult] = None


class DocumentPipeline:
    """
    Wires the engine, the enhancement registry, the worker manager and the
    page coordinator together from one PipelineConfig. Owns the recognition
    client and closes it in close().
    """

    def __init__(self, config: Optional[PipelineConfig] = None, client: Optional[Recognizer] = None,
                 sink: Optional[DocumentSink] = None):
        self.config = config or PipelineConfig()
        cfg = self.config
        self.monitor = PerformanceMonitor(enabled=True, log_path=cfg.performance_log_path if cfg.log_performance else None)
        self.client = client or RecognitionClient(cfg.endpoint_url, api_key=cfg.api_key, timeout=cfg.request_timeout)
        self.sink = sink

        self.engine = ImageDerivativeEngine(output_dir=cfg.output_dir, monitor=self.monitor)
        self.registry = EnhancementRegistry(output_dir=cfg.output_dir, monitor=self.monitor)
        self.workers = RecognitionWorkerManager(
            self.client,
            max_workers=cfg.max_workers,
            request_timeout=cfg.request_timeout,
            drain_delay=cfg.drain_delay,
        )
        self.coordinator = MultiPageCoordinator(
            self.client,
            request_timeout=cfg.request_timeout,
            optimizer=self.engine if cfg.optimize_pages else None,
        )
        logger.debug(
            "Pipeline ready, %d workers, timeout %ss, endpoint %s", cfg.max_workers, cfg.request_timeout, cfg.endpoint_url
        )

    # -----------------------------
    # Single captures
    # -----------------------------
    async def capture(self, image: Union[str, Path], language: Union[str, Language, None] = None,
                      enhance: bool = False, on_progress: Optional[Callable[[str], None]] = None) -> CaptureOutcome:
        """
        Full flow for one captured image: optional enhancement, an upload
        payload under the size budget, preview thumbnails, then recognition
        through the worker manager. The text is handed to the sink on success.
        """
        source = Path(image)
        language = Language.parse(language) if language is not None else self.config.language

        enhanced = None
        if enhance:
            enhanced = await self.registry.process(source, self.config.processing)
            source = enhanced.derivative.path

        optimized, thumbs = await asyncio.gather(
            self.engine.optimize(source, self.config.optimize),
            self.engine.thumbnails(source),
        )
        task = RecognitionTask.create(optimized.derivative.path, language, on_progress, prefix="capture")
        result = await self.recognize_task(task)

        if result.ok and self.sink is not None:
            self.sink.save(Path(image), result.text)
        return CaptureOutcome(task.id, optimized, thumbs, result, enhanced)

    async def recognize_task(self, task: RecognitionTask) -> RecognitionResult:
        """Submit one task and wait for its result."""
        return (await self.recognize_tasks([task]))[task.id]

    async def recognize_tasks(self, tasks: Sequence[RecognitionTask],
                              on_result: Optional[Callable[[RecognitionResult], None]] = None
                              ) -> Dict[str, RecognitionResult]:
        """Submit tasks together and collect their results by task id, in completion order."""
        loop = asyncio.get_running_loop()
        wanted = {t.id for t in tasks}
        results: Dict[str, RecognitionResult] = {}
        finished = loop.create_future()

        def _collect(result: RecognitionResult) -> None:
            if result.task_id not in wanted or result.task_id in results:
                return
            results[result.task_id] = result
            if on_result:
                on_result(result)
            if len(results) == len(wanted) and not finished.done():
                finished.set_result(None)

        unsubscribe = self.workers.subscribe(_collect)
        try:
            for task in tasks:
                self.workers.submit(task)
            if wanted:
                await finished
        finally:
            unsubscribe()
        return results

    async def recognize_many(self, images: Sequence[Union[str, Path]], language: Union[str, Language, None] = None,
                             on_result: Optional[Callable[[RecognitionResult], None]] = None
                             ) -> List[RecognitionResult]:
        """Recognize images as they are, max_workers at a time. Results follow input order."""
        language = Language.parse(language) if language is not None else self.config.language
        tasks = [RecognitionTask.create(p, language) for p in images]
        by_id = await self.recognize_tasks(tasks, on_result=on_result)
        if self.sink is not None:
            for task in tasks:
                if by_id[task.id].ok:
                    self.sink.save(task.image, by_id[task.id].text)
        return [by_id[t.id] for t in tasks]

    # -----------------------------
    # Multi-page documents
    # -----------------------------
    async def process_document(self, pages: Sequence[DocumentPage], language: Union[str, Language, None] = None,
                               on_progress: Optional[PageProgressFn] = None) -> PageRunSummary:
        language = Language.parse(language) if language is not None else self.config.language
        summary = await self.monitor.measure_async(
            "recognition:document",
            lambda: self.coordinator.process_pages(pages, language, on_progress),
            pages=len(pages),
        )
        if self.sink is not None:
            by_id = {p.id: p for p in pages}
            for page_id in summary.processed:
                page = by_id[page_id]
                self.sink.save(page.image, page.extracted_text or "")
        return summary

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()
