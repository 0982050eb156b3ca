"""
OCR  —  Text Extraction from Uploaded Files
═══════════════════════════════════════════

Design: Strategy per file family
────────────────────────────────
  Raster images (jpg, jpeg, png, bmp, tiff, tif)
    TesseractEngine — local pytesseract, runs in the thread executor.
    Low mean word confidence is logged; the text is still returned.

  PDF
    PdfOcrDelegate — POST {ai_service_url}/ocr (multipart, 120 s timeout,
    shortened to fit inside the OCR stage's own deadline).
    Scanned PDFs need page rasterisation + OCR, which the external AI
    service owns. When the delegate is unreachable or errors:
      - default: return "" so the pipeline keeps moving
      - pdf_text_layer_fallback=True: read the native text layer with pypdf

  Anything else
    UnsupportedFileTypeError. The OCR stage checks supports_ocr() first and
    skips these formats, so the error only surfaces for direct callers.

Callers only see OcrService.perform_ocr(path) -> str.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from docflow.core.config import Settings
from docflow.core.deadlines import remaining_budget
from docflow.core.exceptions import DelegateError, UnsupportedFileTypeError
from docflow.processing.files import get_extension

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "bmp", "tiff", "tif"})
PDF_EXTENSIONS   = frozenset({"pdf"})


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class OcrEngine(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Used in log lines."""

    @abstractmethod
    async def recognize(self, path: Path) -> str:
        """Return the recognised text. May raise."""


class TesseractEngine(OcrEngine):
    """
    Local Tesseract through pytesseract.

    Requires the tesseract binary in the worker image. pytesseract shells out
    to it, so each call blocks a thread for the duration of the recognition.
    """

    def __init__(self, lang: str = "eng", confidence_threshold: float = 0.9) -> None:
        self._lang = lang
        self._threshold = confidence_threshold

    @property
    def name(self) -> str:
        return "tesseract"

    async def recognize(self, path: Path) -> str:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        text, confidence = await loop.run_in_executor(None, self._recognize_sync, path)
        elapsed_ms = (time.monotonic() - t0) * 1000

        if confidence < self._threshold:
            logger.warning(
                "OCR confidence below threshold | path=%s confidence=%.2f threshold=%.2f",
                path, confidence, self._threshold,
            )
        logger.info(
            "Tesseract | path=%s chars=%d confidence=%.2f elapsed_ms=%.0f",
            path, len(text), confidence, elapsed_ms,
        )
        return text

    def _recognize_sync(self, path: Path) -> tuple[str, float]:
        """Blocking recognition — runs in thread executor."""
        import pytesseract
        from PIL import Image

        with Image.open(path) as img:
            text = pytesseract.image_to_string(img, lang=self._lang)
            data = pytesseract.image_to_data(img, lang=self._lang, output_type=pytesseract.Output.DICT)

        # word-level confidences are 0–100; -1 marks non-word boxes
        scores = [float(c) for c in data.get("conf", []) if float(c) >= 0]
        confidence = (sum(scores) / len(scores) / 100.0) if scores else 0.0
        return text, confidence


class PdfOcrDelegate(OcrEngine):
    """
    External OCR service. Wraps every transport / HTTP / payload failure in
    DelegateError so the caller has a single thing to catch.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "ocr-service"

    async def recognize(self, path: Path) -> str:
        loop = asyncio.get_running_loop()
        payload = await loop.run_in_executor(None, path.read_bytes)
        budget = remaining_budget(self._timeout)
        t0 = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=budget, transport=self._transport) as client:
                # httpx timeouts are per phase; wait_for caps the whole exchange
                response = await asyncio.wait_for(
                    client.post(
                        f"{self._base_url}/ocr",
                        files={"file": (path.name, payload, "application/octet-stream")},
                    ),
                    timeout=budget,
                )
                response.raise_for_status()
                body = response.json()
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise DelegateError("ocr", f"timed out after {budget:.3g}s") from exc
        except httpx.HTTPError as exc:
            raise DelegateError("ocr", str(exc) or exc.__class__.__name__) from exc
        except ValueError as exc:
            raise DelegateError("ocr", f"invalid response body: {exc}") from exc

        text = (body.get("text") if isinstance(body, dict) else None) or ""
        logger.info(
            "OCR service completed | path=%s chars=%d elapsed_ms=%.0f",
            path, len(text), (time.monotonic() - t0) * 1000,
        )
        return text


class PdfTextLayerExtractor(OcrEngine):
    """Native text layer via pypdf. Empty for scanned (image-only) PDFs."""

    @property
    def name(self) -> str:
        return "pypdf"

    async def recognize(self, path: Path) -> str:
        return await asyncio.get_running_loop().run_in_executor(None, self._extract_sync, path)

    @staticmethod
    def _extract_sync(path: Path) -> str:
        from pypdf import PdfReader

        reader = PdfReader(str(path))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        return "\n\n".join(p for p in pages if p)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class OcrService:

    def __init__(
        self,
        settings: Settings,
        *,
        image_engine: OcrEngine | None = None,
        pdf_delegate: OcrEngine | None = None,
        text_layer: OcrEngine | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._image_engine = image_engine or TesseractEngine(
            lang=settings.tesseract_lang,
            confidence_threshold=settings.ocr_confidence_threshold,
        )
        if pdf_delegate is None and settings.ai_service_url:
            pdf_delegate = PdfOcrDelegate(
                settings.ai_service_url,
                timeout=settings.ocr_service_timeout,
                transport=transport,
            )
        self._pdf_delegate = pdf_delegate
        if text_layer is None and settings.pdf_text_layer_fallback:
            text_layer = PdfTextLayerExtractor()
        self._text_layer = text_layer

    @staticmethod
    def supports_ocr(path: str | os.PathLike) -> bool:
        ext = get_extension(path)
        return ext in IMAGE_EXTENSIONS or ext in PDF_EXTENSIONS

    async def perform_ocr(self, path: str | os.PathLike) -> str:
        """
        Raises FileNotFoundError for a missing file and
        UnsupportedFileTypeError for formats outside images/PDF.
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        ext = get_extension(path)
        logger.info("Starting OCR | path=%s ext=%s", path, ext)

        if ext in IMAGE_EXTENSIONS:
            return await self._image_engine.recognize(path)
        if ext in PDF_EXTENSIONS:
            return await self._pdf_ocr(path)

        raise UnsupportedFileTypeError(ext, operation="OCR")

    async def _pdf_ocr(self, path: Path) -> str:
        if self._pdf_delegate is not None:
            try:
                return await self._pdf_delegate.recognize(path)
            except DelegateError as exc:
                logger.warning("OCR service failed, using fallback | path=%s error=%s", path, exc)

        if self._text_layer is None:
            return ""

        try:
            text = await self._text_layer.recognize(path)
        except Exception as exc:
            logger.warning("PDF text layer unreadable | path=%s error=%s", path, exc)
            return ""
        logger.info("PDF text layer used | path=%s chars=%d", path, len(text))
        return text
