# src/scanflow/logger.py

import logging
from pathlib import Path
from queue import Queue
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Union, Optional

# --- Custom Log Level for Progress ---
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")

def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)

logging.Logger.progress = progress

# --- Handlers fed by the listener ---
EVENT_FIELDS = ("phase", "pct", "current", "total", "task_id")


class ProgressEventHandler(logging.Handler):
    """
    Turns PROGRESS records into plain dicts on a queue, for tqdm bars or
    any other consumer that should not parse log text.
    """
    def __init__(self, events: Queue):
        super().__init__(level=PROGRESS)
        self.events = events
        self.addFilter(LevelFilter(PROGRESS))

    def emit(self, record: logging.LogRecord):
        try:
            event = {"level": record.levelname, "msg": record.getMessage(), "time": record.created}
            event.update({name: getattr(record, name, None) for name in EVENT_FIELDS})
            self.events.put(event)
        except Exception:
            self.handleError(record)


class LevelFilter(logging.Filter):
    """Passes only records at levelno, or everything except them when exclude is set."""
    def __init__(self, levelno: int, exclude: bool = False):
        super().__init__()
        self.levelno = levelno
        self.exclude = exclude

    def filter(self, record: logging.LogRecord) -> bool:
        return (record.levelno == self.levelno) != self.exclude

# --- Main Configuration Function ---
def setup_logging(
    log_queue: Queue,
    *,
    event_queue: Optional[Queue] = None,
    level: int = logging.INFO,
    console: bool = True,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
) -> QueueListener:
    """
    Sets up the logging listener architecture.

    Args:
        log_queue: The queue the "scanflow" logger writes to.
        event_queue: Optional queue receiving structured PROGRESS events.
        level: The base logging level for console output.
        console: Whether to echo records to stderr.
        file_path: Path to the persistent log file.
        file_level: The logging level for the file.

    Returns:
        A QueueListener instance. You must call .start() on it.
    """
    handlers = []

    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(fp, maxBytes=5*1024*1024, backupCount=2, encoding="utf-8")
        fh.setLevel(file_level if file_level is not None else level)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(threadName)-15s | %(levelname)-8s | %(message)s"))
        fh.addFilter(LevelFilter(PROGRESS, exclude=True))
        handlers.append(fh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)-8s %(message)s"))
        ch.addFilter(LevelFilter(PROGRESS, exclude=True))
        handlers.append(ch)

    if event_queue is not None:
        handlers.append(ProgressEventHandler(event_queue))

    configure_logging_queue(log_queue)
    return QueueListener(log_queue, *handlers, respect_handler_level=True)

def configure_logging_queue(log_queue: Queue, level: int = logging.DEBUG) -> logging.Logger:
    """
    Routes the package logger through a QueueHandler so that encode threads
    and the event loop never block on file or console I/O.
    """
    logger = logging.getLogger("scanflow")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(QueueHandler(log_queue))
    logger.propagate = False
    return logger
