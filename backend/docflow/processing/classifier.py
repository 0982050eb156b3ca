"""
Document classification: external ML service with a rule-based fallback.

The delegate (POST {ai_service_url}/classify) is tried first. Any failure
(network, timeout, non-2xx, malformed body) drops to fallback_classification,
which is a pure function of (ocr_text, filename) so a document classified
twice without the service gets the same answer twice.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path

import httpx

from docflow.core.config import Settings
from docflow.core.deadlines import remaining_budget
from docflow.core.exceptions import DelegateError
from docflow.processing.entities import extract_entities
from docflow.processing.files import get_extension
from docflow.schemas.documents import ClassificationResult, ExtractedEntities

logger = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "bmp", "tiff", "tif"})


# ---------------------------------------------------------------------------
# Rule-based fallback
# ---------------------------------------------------------------------------

def _fallback_label(text: str, filename: str, ext: str) -> tuple[str, float]:
    # keyword rules come before the generic extension rules
    if "invoice" in filename or "invoice" in text or "bill" in text:
        return "invoice", 0.7
    if "contract" in filename or "agreement" in text or "contract" in text:
        return "contract", 0.7
    if "drawing" in filename or ext in ("dwg", "dxf"):
        return "technical_drawing", 0.8
    if ext == "pdf" or "report" in filename:
        return "report", 0.6
    if ext in _IMAGE_EXTENSIONS:
        return "image", 0.6
    if ext in ("doc", "docx"):
        return "document", 0.6
    if ext == "xlsx":
        return "spreadsheet", 0.7
    return "unknown", 0.5


def fallback_classification(ocr_text: str | None, path: str | os.PathLike) -> ClassificationResult:
    t0 = time.monotonic()
    filename = Path(path).name.lower()
    document_type, confidence = _fallback_label((ocr_text or "").lower(), filename, get_extension(path))

    result = ClassificationResult(
        document_type=document_type,
        confidence=confidence,
        processing_time=int((time.monotonic() - t0) * 1000),
        entities=extract_entities(ocr_text),
        source="fallback",
    )
    logger.info("Fallback classification | file=%s type=%s confidence=%.2f", filename, document_type, confidence)
    return result


# ---------------------------------------------------------------------------
# HTTP delegate
# ---------------------------------------------------------------------------

class ClassificationDelegate:

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def classify(self, ocr_text: str, path: str | os.PathLike) -> ClassificationResult:
        """Raises DelegateError on any failure."""
        t0 = time.monotonic()
        request = {
            "text":      ocr_text,
            "filename":  Path(path).name,
            "file_type": get_extension(path),
        }

        budget = remaining_budget(self._timeout)

        try:
            async with httpx.AsyncClient(timeout=budget, transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.post(f"{self._base_url}/classify", json=request),
                    timeout=budget,
                )
                response.raise_for_status()
                body = response.json()

            entities = body.get("entities") or {}
            result = ClassificationResult(
                document_type=body.get("document_type") or "unknown",
                confidence=min(max(float(body.get("confidence") or 0.0), 0.0), 1.0),
                processing_time=int((time.monotonic() - t0) * 1000),
                entities=ExtractedEntities.model_validate(entities),
                similar_documents=list(body.get("similar_documents") or []),
                source="service",
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise DelegateError("classify", f"timed out after {budget:.3g}s") from exc
        except httpx.HTTPError as exc:
            raise DelegateError("classify", str(exc) or exc.__class__.__name__) from exc
        except (ValueError, TypeError, AttributeError) as exc:
            raise DelegateError("classify", f"invalid response body: {exc}") from exc

        logger.info(
            "Classification service completed | file=%s type=%s confidence=%.2f elapsed_ms=%d",
            request["filename"], result.document_type, result.confidence, result.processing_time,
        )
        return result


class DocumentClassifier:

    def __init__(
        self,
        settings: Settings,
        *,
        delegate: ClassificationDelegate | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if delegate is None and settings.ai_service_url:
            delegate = ClassificationDelegate(
                settings.ai_service_url,
                timeout=settings.classify_service_timeout,
                transport=transport,
            )
        self._delegate = delegate
        self._threshold = settings.classification_confidence_threshold

    async def classify(self, ocr_text: str | None, path: str | os.PathLike) -> ClassificationResult:
        """Never raises for delegate failures."""
        logger.info("Starting classification | file=%s", Path(path).name)

        if self._delegate is not None:
            try:
                result = await self._delegate.classify(ocr_text or "", path)
            except DelegateError as exc:
                logger.warning("Classification service failed, using fallback | error=%s", exc)
            else:
                if result.confidence < self._threshold:
                    logger.info(
                        "Low classification confidence | file=%s confidence=%.2f",
                        Path(path).name, result.confidence,
                    )
                return result

        return fallback_classification(ocr_text, path)
