# src/scanflow/multipage.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence, Union

from .derivatives import ImageDerivativeEngine
from .exceptions import ValidationError
from .models import (
    DocumentPage,
    Done,
    ErrorKind,
    Failed,
    Language,
    OptimizeOptions,
    PageRunSummary,
    Processing,
)
from .recognition import Recognizer, describe_failure

logger = logging.getLogger("scanflow")

PageProgressFn = Callable[[int, int], None]


class MultiPageCoordinator:
    """
    Recognizes the pages of one document strictly in order, one request at
    a time. Each page's text is committed before the next page starts. The
    first failure stops the run; pages after it are left Unprocessed so a
    later run picks up where this one stopped.

    With an optimizer, each page is uploaded as a document-preset derivative.
    The page keeps its original image, so a retry starts from the capture.
    """

    def __init__(self, client: Recognizer, request_timeout: float = 30.0,
                 optimizer: Optional[ImageDerivativeEngine] = None):
        self.client = client
        self.request_timeout = request_timeout
        self.optimizer = optimizer

    async def process_pages(
        self,
        pages: Sequence[DocumentPage],
        language: Union[str, Language, None] = Language.AUTO,
        on_progress: Optional[PageProgressFn] = None,
    ) -> PageRunSummary:
        if not pages:
            raise ValidationError("No pages to process")
        language = Language.parse(language)
        ordered = sorted(pages, key=lambda p: p.order)
        total = len(ordered)
        summary = PageRunSummary()

        logger.info("Processing %d pages, language %s", total, language.value)
        for index, page in enumerate(ordered, start=1):
            if on_progress:
                on_progress(index, total)
            logger.progress(
                f"page {index}/{total}",
                extra={"phase": "pages", "current": index, "total": total, "pct": 100.0 * (index - 1) / total},
            )

            if isinstance(page.state, Done):
                logger.debug("Page %s already processed, skipping", page.id)
                summary.skipped.append(page.id)
                continue

            page.state = Processing()
            try:
                upload = page.image
                if self.optimizer is not None:
                    result = await self.optimizer.optimize(page.image, OptimizeOptions.document())
                    upload = result.derivative.path
                text = await asyncio.wait_for(
                    self.client.recognize_async(upload, language),
                    timeout=self.request_timeout,
                )
            except asyncio.TimeoutError:
                message = f"Recognition timed out after {self.request_timeout:g}s"
                return self._fail(page, summary, message, ErrorKind.TIMEOUT)
            except Exception as e:
                message, kind = describe_failure(e)
                return self._fail(page, summary, message, kind)

            page.state = Done(text)
            summary.processed.append(page.id)
            logger.info("Page %s done, %d characters", page.id, len(text))

        logger.progress("pages complete", extra={"phase": "pages", "current": total, "total": total, "pct": 100.0})
        return summary

    @staticmethod
    def _fail(page: DocumentPage, summary: PageRunSummary, message: str, kind: ErrorKind) -> PageRunSummary:
        page.state = Failed(message, kind)
        summary.failed_page_id = page.id
        summary.error = message
        logger.error("Failed to process page %s, %s", page.id, message)
        return summary
