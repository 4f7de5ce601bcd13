# src/scanflow/config.py
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional
import tempfile

from .models import Language, OptimizeOptions, ProcessingOptions


DEFAULT_ENDPOINT = "https://toolkit.rork.com/text/llm/"


def default_max_workers(constrained_device: bool) -> int:
    # Memory-constrained devices get a single in-flight request
    return 1 if constrained_device else 2


@dataclass
class PipelineConfig:
    """Configuration for a scanflow pipeline instance."""
    endpoint_url: str = DEFAULT_ENDPOINT
    api_key: Optional[str] = None

    constrained_device: bool = False
    max_workers: Optional[int] = None
    request_timeout: float = 30.0
    drain_delay: float = 0.1

    output_dir: Path = Path(tempfile.gettempdir()) / "scanflow_derivatives"
    language: Language = Language.AUTO

    optimize: OptimizeOptions = field(default_factory=OptimizeOptions.document)
    processing: ProcessingOptions = field(default_factory=ProcessingOptions)
    optimize_pages: bool = True

    log_path: Optional[Path] = None
    log_performance: bool = False
    performance_log_path: Optional[Path] = None

    log_queue: Optional[Any] = None

    def __post_init__(self):
        if self.max_workers is None:
            self.max_workers = default_max_workers(self.constrained_device)
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.request_timeout <= 0:
            raise ValueError(f"request_timeout must be > 0, got {self.request_timeout}")
        self.language = Language.parse(self.language)

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary suitable for JSON dumps."""
        # log_queue holds locks and cannot be copied
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "log_queue"}
        d["optimize"] = asdict(self.optimize)
        d["processing"] = asdict(self.processing)
        for key, value in d.items():
            if isinstance(value, Path):
                d[key] = str(value)
            elif isinstance(value, Language):
                d[key] = value.value
        return d

    @classmethod
    def from_dict(cls, config_dict: dict):
        d = dict(config_dict)

        # normalize path-like fields
        for key in ["output_dir", "log_path", "performance_log_path"]:
            if key in d and isinstance(d[key], str):
                d[key] = Path(d[key])

        # allow explicit None to mean use default
        for key in ["endpoint_url", "request_timeout", "drain_delay", "output_dir", "language", "optimize", "processing"]:
            if d.get(key) is None:
                d.pop(key, None)

        if isinstance(d.get("optimize"), dict):
            d["optimize"] = OptimizeOptions(**d["optimize"])
        if isinstance(d.get("processing"), dict):
            d["processing"] = ProcessingOptions(**d["processing"])

        cfg = cls(**d)

        # if logging is on but no path was provided, pick one next to the derivatives
        if cfg.log_performance and not cfg.performance_log_path:
            cfg.performance_log_path = cfg.output_dir / "scanflow_performance_log.jsonl"

        return cfg
