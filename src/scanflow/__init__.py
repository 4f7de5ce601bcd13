# src/scanflow/__init__.py
from . import logger as _logger  # noqa: F401, registers the PROGRESS level and Logger.progress

from .config import PipelineConfig
from .derivatives import ImageDerivativeEngine
from .enhancements import EnhancementRegistry, EnhancementStep
from .multipage import MultiPageCoordinator
from .pipeline import DocumentPipeline, DocumentSink
from .preview import ProgressivePreviewController
from .recognition import RecognitionClient
from .workers import RecognitionWorkerManager

__all__ = [
    "PipelineConfig",
    "ImageDerivativeEngine",
    "EnhancementRegistry",
    "EnhancementStep",
    "MultiPageCoordinator",
    "DocumentPipeline",
    "DocumentSink",
    "ProgressivePreviewController",
    "RecognitionClient",
    "RecognitionWorkerManager",
]

__version__ = "0.1.0"
