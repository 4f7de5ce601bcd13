# src/scanflow/recognition.py
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Union

import requests

from .config import DEFAULT_ENDPOINT
from .exceptions import EncodeError, RecognitionTimeoutError, TransportError, ValidationError
from .models import ErrorKind, Language
from .utils import image_to_base64

logger = logging.getLogger("scanflow")

ProgressSink = Optional[Callable[[str], None]]


class Recognizer(Protocol):
    """Anything that can turn an image into text for the worker manager and coordinator."""

    async def recognize_async(self, image: Path, language: Language = Language.AUTO,
                              on_progress: ProgressSink = None) -> str:
        ...


def build_instruction(language: Language) -> str:
    if language is Language.AUTO:
        hint = "Auto-detect the language."
    else:
        hint = f"The text is primarily in {language.display_name}."
    return f"Extract text from this image quickly. {hint} Return only the text content, no formatting or commentary."


def build_payload(image_b64: str, language: Language) -> Dict[str, Any]:
    return {
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_instruction(language)},
                    {"type": "image", "image": image_b64},
                ],
            }
        ]
    }


def _encode(image: Path) -> str:
    try:
        return image_to_base64(image)
    except OSError as e:
        raise EncodeError(f"Could not read image for recognition, {image}, {e}") from e


class RecognitionClient:
    """
    Client for the remote text-recognition capability. One call is one HTTP
    request; failures raise TransportError or RecognitionTimeoutError and are
    never retried here.

    A response without a completion yields "" rather than a placeholder
    message, so a blank page ends up Done("") and stays distinguishable from
    a page that failed.
    """

    def __init__(
        self,
        endpoint_url: str = DEFAULT_ENDPOINT,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._api_key = api_key
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _post(self, payload: Dict[str, Any]) -> str:
        try:
            response = self._session.post(
                self.endpoint_url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.Timeout as e:
            raise RecognitionTimeoutError(f"Recognition request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"Recognition request failed, {e}") from e

        if not response.ok:
            raise TransportError(f"AI API error: {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Recognition response was not valid JSON") from e

        text = (data or {}).get("completion") or ""
        if not text:
            logger.warning("Recognition returned no text")
        return text

    def recognize(self, image: Union[str, Path], language: Language = Language.AUTO,
                  on_progress: ProgressSink = None) -> str:
        """Blocking variant, for scripts and the CLI."""
        image = Path(image)
        if on_progress:
            on_progress("Converting image to base64...")
        payload = build_payload(_encode(image), Language.parse(language))
        if on_progress:
            on_progress("Sending to AI for text extraction...")
        text = self._post(payload)
        logger.info("Recognition completed for %s, %d characters", image.name, len(text))
        return text

    async def recognize_async(self, image: Union[str, Path], language: Language = Language.AUTO,
                              on_progress: ProgressSink = None) -> str:
        """
        Same request, without blocking the event loop. Progress messages are
        emitted from the loop thread; file reading and the HTTP call run in
        worker threads. Callers bound the total duration with asyncio.wait_for.
        """
        image = Path(image)
        if on_progress:
            on_progress("Converting image to base64...")
        image_b64 = await asyncio.to_thread(_encode, image)
        if on_progress:
            on_progress("Sending to AI for text extraction...")
        text = await asyncio.to_thread(self._post, build_payload(image_b64, Language.parse(language)))
        logger.info("Recognition completed for %s, %d characters", image.name, len(text))
        return text

    def close(self) -> None:
        self._session.close()


def describe_failure(exc: BaseException) -> Tuple[str, ErrorKind]:
    """Message and ErrorKind for an exception raised while recognizing one image."""
    if isinstance(exc, (RecognitionTimeoutError, asyncio.TimeoutError)):
        return (str(exc) or "Recognition request timed out"), ErrorKind.TIMEOUT
    if isinstance(exc, EncodeError):
        return str(exc), ErrorKind.ENCODE
    if isinstance(exc, ValidationError):
        return str(exc), ErrorKind.VALIDATION
    return (str(exc) or "OCR processing failed"), ErrorKind.TRANSPORT
