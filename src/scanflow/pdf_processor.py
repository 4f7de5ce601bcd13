# src/scanflow/pdf_processor.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

import fitz  # PyMuPDF

from .models import DocumentPage
from .utils import safe_fname

logger = logging.getLogger("scanflow")

DEFAULT_DPI = 200


# --- Step 1, interface ---
class BasePDFProcessor(ABC):
    """
    Interface for anything that turns a PDF into page images for recognition.
    """

    @abstractmethod
    def render_pages(self, file_path: Path, dpi: int, output_dir: Path) -> List[DocumentPage]:
        """Renders every page to an image file and returns them as unprocessed pages."""
        raise NotImplementedError


# --- Step 2, concrete implementation with PyMuPDF ---
class PyMuPDFProcessor(BasePDFProcessor):
    """PDF processor that uses PyMuPDF."""

    def render_pages(self, file_path: Path, dpi: int = DEFAULT_DPI, output_dir: Path = Path(".")) -> List[DocumentPage]:
        """
        Render each page to a PNG on disk. Page ids are derived from the file
        name so re-rendering the same PDF yields the same ids.
        """
        file_path = Path(file_path)
        stem = safe_fname(file_path.stem)
        pages: List[DocumentPage] = []
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            with fitz.open(file_path) as doc:
                if len(doc) == 0:
                    logger.debug("PDF has zero pages, %s", file_path)
                    return []
                for index, page in enumerate(doc):
                    pix = page.get_pixmap(dpi=dpi)
                    image_path = output_dir / f"{stem}_p{index + 1:04d}.png"
                    pix.save(image_path)
                    pages.append(DocumentPage(id=f"{stem}-p{index + 1}", image=image_path, order=index))
            logger.info("Rendered %d pages from %s at %d dpi", len(pages), file_path.name, dpi)
            return pages
        except Exception as e:
            logger.warning("PyMuPDF failed to render %s to images, %s", file_path.name, e)
            return []


# --- Step 3, factory ---
def get_pdf_processor(engine_name: str = "pymupdf") -> BasePDFProcessor:
    """
    Create a PDF processor by name.
    """
    name = (engine_name or "").lower()
    if name == "pymupdf":
        return PyMuPDFProcessor()
    raise ValueError(f"Unknown PDF engine, '{engine_name}'. Supported engines, ['pymupdf']")
