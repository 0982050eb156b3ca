"""
Search indexing hook for the last pipeline stage.

Building a search engine is out of scope for this service; the indexing
stage hands the finished document to whatever SearchIndexer is injected.
The default LoggingIndexer records what would be indexed and returns.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from docflow.schemas.documents import DocumentRecord

logger = logging.getLogger(__name__)


class SearchIndexer(ABC):

    @abstractmethod
    async def index_document(self, document: DocumentRecord) -> None:
        """Make the document searchable. Raise to fail the attempt."""

    async def close(self) -> None:
        """Release backend resources."""


class LoggingIndexer(SearchIndexer):

    async def index_document(self, document: DocumentRecord) -> None:
        logger.info(
            "Document indexed | doc=%s type=%s chars=%d",
            document.id, document.ai_classification, len(document.ocr_text or ""),
        )
