# src/scanflow/workers.py
from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from .exceptions import ValidationError
from .models import ErrorKind, QueueStatus, RecognitionResult, RecognitionTask
from .recognition import Recognizer, describe_failure

logger = logging.getLogger("scanflow")

ResultCallback = Callable[[RecognitionResult], None]


class RecognitionWorkerManager:
    """
    Bounded-concurrency dispatcher for recognition tasks.

    Tasks wait in a FIFO queue. A drain takes up to max_workers of them,
    dispatches them together and waits for the whole batch to settle before
    publishing each result to the subscribers and draining again. At most
    max_workers requests are ever in flight, every submitted task gets
    exactly one result, and batches publish in the order they settle.

    All state lives on the event loop thread: submit(), cancel() and the
    drains must be called from the loop that runs the manager.
    """

    def __init__(self, client: Recognizer, max_workers: int = 2, request_timeout: float = 30.0,
                 drain_delay: float = 0.1):
        if max_workers < 1:
            raise ValidationError(f"max_workers must be >= 1, got {max_workers}")
        if request_timeout <= 0:
            raise ValidationError(f"request_timeout must be > 0, got {request_timeout}")
        self.client = client
        self.max_workers = max_workers
        self.request_timeout = request_timeout
        self.drain_delay = drain_delay

        self._pending: Deque[RecognitionTask] = deque()
        self._active: Dict[str, RecognitionTask] = {}
        self._subscribers: List[ResultCallback] = []
        self._draining = False
        self._batches: Set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None
        self._completed = 0

    # -----------------------------
    # Public API
    # -----------------------------
    def submit(self, task: RecognitionTask) -> None:
        """Queue a task and schedule a drain. Returns immediately."""
        if task.id in self._active or any(t.id == task.id for t in self._pending):
            raise ValidationError(f"Task {task.id} is already queued or running")
        loop = asyncio.get_running_loop()
        self._pending.append(task)
        self._idle_event().clear()
        logger.info("Queued recognition task %s, %d pending", task.id, len(self._pending))
        loop.call_soon(self._drain)

    def cancel(self, task_id: str) -> bool:
        """
        Drop a task that has not been dispatched yet. A task that is already
        in flight cannot be aborted and will still publish its result.
        """
        for task in self._pending:
            if task.id == task_id:
                self._pending.remove(task)
                logger.info("Cancelled recognition task %s", task_id)
                self._check_idle()
                return True
        if task_id in self._active:
            logger.info("Task %s is already in flight, it will run to completion", task_id)
        return False

    def subscribe(self, callback: ResultCallback) -> Callable[[], None]:
        """Register a result listener. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: ResultCallback) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def status(self) -> QueueStatus:
        return QueueStatus(pending=len(self._pending), active=len(self._active))

    async def wait_idle(self) -> None:
        """Wait until nothing is pending or in flight."""
        await self._idle_event().wait()

    # -----------------------------
    # Drain cycle
    # -----------------------------
    def _drain(self) -> None:
        if self._draining:
            return
        if not self._pending:
            self._check_idle()
            return

        self._draining = True
        batch = [self._pending.popleft() for _ in range(min(self.max_workers, len(self._pending)))]
        for task in batch:
            self._active[task.id] = task
        logger.debug("Dispatching %d recognition tasks, %d still pending", len(batch), len(self._pending))

        runner = asyncio.get_running_loop().create_task(self._run_batch(batch))
        self._batches.add(runner)
        runner.add_done_callback(self._batches.discard)

    async def _run_batch(self, batch: List[RecognitionTask]) -> None:
        try:
            outcomes = await asyncio.gather(*(self._perform(t) for t in batch), return_exceptions=True)
            for task, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    message, kind = describe_failure(outcome)
                    outcome = RecognitionResult.failure(task.id, message or "Processing failed", kind)
                self._active.pop(task.id, None)
                self._publish(outcome)
        finally:
            self._draining = False
            if self._pending:
                asyncio.get_running_loop().call_later(self.drain_delay, self._drain)
            else:
                self._check_idle()

    async def _perform(self, task: RecognitionTask) -> RecognitionResult:
        logger.info("Starting recognition for task %s", task.id)
        report = functools.partial(self._report, task)
        try:
            text = await asyncio.wait_for(
                self.client.recognize_async(task.image, task.language, report),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            message = f"Recognition timed out after {self.request_timeout:g}s"
            logger.error("Recognition failed for task %s, %s", task.id, message)
            report("Failed")
            return RecognitionResult.failure(task.id, message, ErrorKind.TIMEOUT)
        except Exception as e:
            message, kind = describe_failure(e)
            logger.error("Recognition failed for task %s, %s", task.id, message)
            report("Failed")
            return RecognitionResult.failure(task.id, message, kind)

        report("Done")
        logger.info("Recognition completed for task %s, %d characters", task.id, len(text))
        return RecognitionResult(task_id=task.id, text=text)

    def _report(self, task: RecognitionTask, message: str) -> None:
        try:
            task.report(message)
        except Exception:
            logger.exception("Progress callback failed for task %s", task.id)

    def _publish(self, result: RecognitionResult) -> None:
        self._completed += 1
        for callback in list(self._subscribers):
            try:
                callback(result)
            except Exception:
                logger.exception("Result subscriber failed for task %s", result.task_id)
        remaining = len(self._pending) + len(self._active)
        logger.progress(
            "recognition result",
            extra={
                "phase": "recognition",
                "task_id": result.task_id,
                "current": self._completed,
                "total": self._completed + remaining,
            },
        )

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            if not self._busy():
                self._idle.set()
        return self._idle

    def _busy(self) -> bool:
        return bool(self._pending or self._active or self._draining)

    def _check_idle(self) -> None:
        if not self._busy():
            self._idle_event().set()
