"""
Document Processing Package
════════════════════════════

The per-file work behind the pipeline stages:

Modules
───────
  files.py       Validation, metadata, thumbnails, relocation (Pillow)
  ocr.py         Tesseract for images, OCR service delegate for PDFs
  classifier.py  Classification service delegate + rule-based fallback
  entities.py    Regex extraction of dates, amounts and project codes

Every component is stateless and dependency-injected; the AI gateway
(docflow.services.ai_gateway) composes ocr, classifier and entities.
"""

from docflow.processing.classifier import DocumentClassifier, fallback_classification
from docflow.processing.entities import extract_entities
from docflow.processing.files import FileProcessor
from docflow.processing.ocr import OcrService

__all__ = [
    "DocumentClassifier",
    "fallback_classification",
    "extract_entities",
    "FileProcessor",
    "OcrService",
]
