"""
AI Gateway

Single injected entry point for the pipeline's AI work:

  perform_ocr(path)                 → str
  classify_document(ocr_text, path) → ClassificationResult
  extract_entities(text)            → ExtractedEntities
  health_check()                    → {"ai_service": bool, "tesseract": bool}

The gateway owns no state beyond its configured engines, so one instance is
shared by every worker in the process. Tests construct it with an
httpx.MockTransport (or replace the engines outright).
"""

from __future__ import annotations

import asyncio
import logging
import os

import httpx

from docflow.core.config import Settings
from docflow.processing.classifier import DocumentClassifier
from docflow.processing.entities import extract_entities
from docflow.processing.ocr import OcrService
from docflow.schemas.documents import ClassificationResult, ExtractedEntities

logger = logging.getLogger(__name__)


class AIGateway:

    def __init__(
        self,
        settings: Settings,
        *,
        ocr: OcrService | None = None,
        classifier: DocumentClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._service_url = settings.ai_service_url.rstrip("/")
        self._health_timeout = settings.health_check_timeout
        self._transport = transport
        self._ocr = ocr or OcrService(settings, transport=transport)
        self._classifier = classifier or DocumentClassifier(settings, transport=transport)

    def supports_ocr(self, path: str | os.PathLike) -> bool:
        return self._ocr.supports_ocr(path)

    async def perform_ocr(self, path: str | os.PathLike) -> str:
        try:
            return await self._ocr.perform_ocr(path)
        except Exception:
            logger.exception("OCR processing failed | path=%s", path)
            raise

    async def classify_document(self, ocr_text: str | None, path: str | os.PathLike) -> ClassificationResult:
        return await self._classifier.classify(ocr_text, path)

    @staticmethod
    def extract_entities(text: str | None) -> ExtractedEntities:
        return extract_entities(text)

    async def health_check(self) -> dict[str, bool]:
        health = {
            "ai_service": False,
            "tesseract":  await self._tesseract_available(),
        }

        if self._service_url:
            try:
                async with httpx.AsyncClient(timeout=self._health_timeout, transport=self._transport) as client:
                    response = await client.get(f"{self._service_url}/health")
                health["ai_service"] = response.status_code == 200
            except httpx.HTTPError as exc:
                logger.warning("AI service health check failed | error=%s", exc)

        return health

    @staticmethod
    async def _tesseract_available() -> bool:
        def _probe() -> bool:
            import pytesseract
            pytesseract.get_tesseract_version()
            return True

        try:
            return await asyncio.get_running_loop().run_in_executor(None, _probe)
        except Exception as exc:
            logger.warning("Tesseract unavailable | error=%s", exc)
            return False
