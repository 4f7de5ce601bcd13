# src/scanflow/models.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from .exceptions import ValidationError


class Language(str, Enum):
    AUTO = "auto"
    EN = "en"
    ES = "es"
    FR = "fr"
    DE = "de"
    IT = "it"
    PT = "pt"

    @property
    def display_name(self) -> str:
        return _LANGUAGE_NAMES[self]

    @classmethod
    def parse(cls, value: Union[str, "Language", None]) -> "Language":
        """Accept a Language, a code like 'en', or None (auto)."""
        if isinstance(value, Language):
            return value
        if not value:
            return cls.AUTO
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported language, {value!r}")


_LANGUAGE_NAMES = {
    Language.AUTO: "Auto-detect",
    Language.EN: "English",
    Language.ES: "Spanish",
    Language.FR: "French",
    Language.DE: "German",
    Language.IT: "Italian",
    Language.PT: "Portuguese",
}


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    ENCODE = "encode"
    VALIDATION = "validation"


# --- Recognition ---

@dataclass(frozen=True)
class RecognitionTask:
    """A single image submitted for text recognition."""
    id: str
    image: Path
    language: Language = Language.AUTO
    on_progress: Optional[Callable[[str], None]] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationError("RecognitionTask.id must be non-empty")
        if not isinstance(self.image, Path):
            object.__setattr__(self, "image", Path(self.image))
        if not isinstance(self.language, Language):
            object.__setattr__(self, "language", Language.parse(self.language))

    @classmethod
    def create(cls, image: Union[str, Path], language: Union[str, Language, None] = None,
               on_progress: Optional[Callable[[str], None]] = None, prefix: str = "task") -> "RecognitionTask":
        return cls(
            id=f"{prefix}-{uuid.uuid4().hex[:12]}",
            image=Path(image),
            language=Language.parse(language),
            on_progress=on_progress,
        )

    def report(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)


@dataclass(frozen=True)
class RecognitionResult:
    """Outcome of one recognition task. Text is empty whenever error is set."""
    task_id: str
    text: str = ""
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, task_id: str, error: str, kind: ErrorKind) -> "RecognitionResult":
        return cls(task_id=task_id, text="", error=error, error_kind=kind)


@dataclass(frozen=True)
class QueueStatus:
    pending: int
    active: int

    @property
    def busy(self) -> bool:
        return self.pending > 0 or self.active > 0


# --- Images ---

@dataclass(frozen=True)
class ImageDerivative:
    """A resized or recompressed copy of a source image on disk."""
    path: Path
    width: int
    height: int
    size_bytes: int

    @property
    def uri(self) -> str:
        return self.path.as_uri() if self.path.is_absolute() else str(self.path)


@dataclass(frozen=True)
class ProgressiveThumbnails:
    low_res: ImageDerivative
    medium_res: ImageDerivative
    high_res: ImageDerivative


@dataclass(frozen=True)
class OptimizeOptions:
    """Knobs for ImageDerivativeEngine.optimize."""
    max_width: int = 1920
    max_height: int = 1920
    quality: float = 0.8
    target_size_bytes: int = 800 * 1024

    def __post_init__(self) -> None:
        if not 0.0 < self.quality <= 1.0:
            raise ValidationError(f"quality must be in (0, 1], got {self.quality}")
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValidationError("max_width and max_height must be positive")
        if self.target_size_bytes <= 0:
            raise ValidationError("target_size_bytes must be positive")

    @classmethod
    def document(cls) -> "OptimizeOptions":
        # Smaller target for faster upload, higher quality for text clarity
        return cls(max_width=1600, max_height=1600, quality=0.85, target_size_bytes=600 * 1024)


@dataclass(frozen=True)
class ProcessingOptions:
    """Which enhancement steps run, plus the final encode quality."""
    border_detection: bool = True
    perspective_correction: bool = True
    glare_removal: bool = True
    shadow_removal: bool = True
    contrast_enhancement: bool = True
    sharpening: bool = True
    quality: float = 0.9

    def __post_init__(self) -> None:
        if not 0.0 < self.quality <= 1.0:
            raise ValidationError(f"quality must be in (0, 1], got {self.quality}")

    @classmethod
    def quick(cls) -> "ProcessingOptions":
        return cls(
            border_detection=True,
            perspective_correction=False,
            glare_removal=False,
            shadow_removal=False,
            contrast_enhancement=True,
            sharpening=False,
            quality=0.8,
        )

    @classmethod
    def full(cls) -> "ProcessingOptions":
        return cls(quality=0.95)


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class DocumentBounds:
    top_left: Point
    top_right: Point
    bottom_left: Point
    bottom_right: Point
    confidence: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(f"confidence must be in [0, 1], got {self.confidence}")

    def corners(self) -> List[Point]:
        """Corners in clockwise order starting at top-left."""
        return [self.top_left, self.top_right, self.bottom_right, self.bottom_left]


@dataclass(frozen=True)
class ProcessingResult:
    derivative: ImageDerivative
    original_size_bytes: int
    processed_size_bytes: int
    applied_enhancements: List[str] = field(default_factory=list)
    document_bounds: Optional[DocumentBounds] = None
    processing_time_ms: int = 0
    attempts: int = 0
    quality: Optional[float] = None

    @property
    def compression_ratio(self) -> float:
        if self.original_size_bytes <= 0:
            return 1.0
        return self.processed_size_bytes / self.original_size_bytes


@dataclass(frozen=True)
class ImageValidation:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


# --- Documents ---

@dataclass(frozen=True)
class Unprocessed:
    pass


@dataclass(frozen=True)
class Processing:
    pass


@dataclass(frozen=True)
class Done:
    text: str


@dataclass(frozen=True)
class Failed:
    error: str
    kind: Optional[ErrorKind] = None


PageState = Union[Unprocessed, Processing, Done, Failed]


@dataclass
class DocumentPage:
    """
    One page of a multi-page document. The state is mutated in place as
    recognition progresses; extracted_text is only set once the page is Done.
    """
    id: str
    image: Path
    order: int
    state: PageState = field(default_factory=Unprocessed)

    def __post_init__(self) -> None:
        if not isinstance(self.image, Path):
            self.image = Path(self.image)

    @property
    def extracted_text(self) -> Optional[str]:
        if isinstance(self.state, Done):
            return self.state.text
        return None

    @property
    def is_processed(self) -> bool:
        return isinstance(self.state, Done)


@dataclass
class PageRunSummary:
    """What a MultiPageCoordinator run did. failed_page_id is set when it stopped early."""
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_page_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failed_page_id is None
