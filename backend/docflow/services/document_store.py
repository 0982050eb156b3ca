"""
Document Status Store

The pipeline's only view of the documents table. Every stage reads and
writes through this interface; it never touches ORM sessions directly.

Contract (enforced by ALL implementations):
  - update_status() is atomic per call and serializes concurrent writers to
    the same document (row lock in SQL, per-document lock in memory), so two
    retried attempts cannot interleave a read-check-write.
  - Status changes follow the document state machine
    (docflow.schemas.documents.STATUS_TRANSITIONS); an illegal change raises
    InvalidStatusTransition and writes nothing.
  - Optional fields passed as None are left untouched; metadata is merged.
  - processed_at is stamped when a document reaches 'completed'.

Backends:
  SqlDocumentStore       — PostgreSQL via async SQLAlchemy (production)
  InMemoryDocumentStore  — process-local dict (local dev, tests)
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncContextManager, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.core.config import Settings
from docflow.core.exceptions import DocumentNotFoundError, InvalidStatusTransition
from docflow.models.documents import Document
from docflow.schemas.documents import (
    DocumentRecord,
    DocumentStatus,
    NewDocument,
    can_transition,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentStore(ABC):

    @abstractmethod
    async def create(self, new: NewDocument) -> DocumentRecord:
        """Insert a document in 'pending' status."""

    @abstractmethod
    async def find_by_id(self, document_id: int) -> DocumentRecord | None:
        """Return the document or None."""

    @abstractmethod
    async def update_status(
        self,
        document_id: int,
        status: DocumentStatus,
        *,
        ocr_text: str | None = None,
        ai_classification: str | None = None,
        confidence_score: float | None = None,
        processing_time: int | None = None,
        file_path: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> DocumentRecord:
        """
        Atomically move a document to `status` and write the stage fields.
        Raises DocumentNotFoundError / InvalidStatusTransition.
        """

    @abstractmethod
    async def reset_for_reprocessing(self, document_id: int) -> DocumentRecord:
        """Start a new pipeline pass: back to 'pending', stage outputs cleared."""

    @abstractmethod
    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        """Documents still 'pending' after `older_than` (never picked up)."""

    async def close(self) -> None:
        """Release backend resources."""


def _check_transition(document_id: int, current: DocumentStatus, requested: DocumentStatus) -> None:
    if not can_transition(current, requested):
        raise InvalidStatusTransition(document_id, current.value, requested.value)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store. Records are copied on the way in and out so callers
    never mutate shared state.
    """

    def __init__(self) -> None:
        self._docs: dict[int, DocumentRecord] = {}
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()
        self._next_id = 1
        self._id_lock = asyncio.Lock()

    def _lock(self, document_id: int) -> asyncio.Lock:
        # an entry lives only while some caller holds or waits on the lock
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        return lock

    async def create(self, new: NewDocument) -> DocumentRecord:
        async with self._id_lock:
            document_id = self._next_id
            self._next_id += 1
        now = _utcnow()
        record = DocumentRecord(
            id=document_id,
            status=DocumentStatus.PENDING,
            created_at=now,
            updated_at=now,
            **new.model_dump(),
        )
        self._docs[document_id] = record
        logger.info("Document created | doc=%s file=%s", document_id, new.filename)
        return record.model_copy(deep=True)

    async def add(self, record: DocumentRecord) -> DocumentRecord:
        """Seed a fully-formed record (fixtures, imports)."""
        self._docs[record.id] = record.model_copy(deep=True)
        self._next_id = max(self._next_id, record.id + 1)
        return record.model_copy(deep=True)

    async def find_by_id(self, document_id: int) -> DocumentRecord | None:
        doc = self._docs.get(document_id)
        return doc.model_copy(deep=True) if doc else None

    async def update_status(
        self,
        document_id: int,
        status: DocumentStatus,
        *,
        ocr_text: str | None = None,
        ai_classification: str | None = None,
        confidence_score: float | None = None,
        processing_time: int | None = None,
        file_path: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> DocumentRecord:
        async with self._lock(document_id):
            doc = self._docs.get(document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            _check_transition(document_id, doc.status, status)

            updates: dict[str, Any] = {"status": status, "updated_at": _utcnow()}
            if ocr_text is not None:
                updates["ocr_text"] = ocr_text
            if ai_classification is not None:
                updates["ai_classification"] = ai_classification
            if confidence_score is not None:
                updates["confidence_score"] = confidence_score
            if processing_time is not None:
                updates["processing_time"] = processing_time
            if file_path is not None:
                updates["file_path"] = file_path
            if metadata:
                updates["metadata"] = {**doc.metadata, **metadata}
            if error_message is not None:
                updates["error_message"] = error_message
            if status == DocumentStatus.COMPLETED:
                updates["processed_at"] = updates["updated_at"]

            updated = doc.model_copy(update=updates, deep=True)
            self._docs[document_id] = updated

        logger.info("Document status updated | doc=%s %s -> %s", document_id, doc.status.value, status.value)
        return updated.model_copy(deep=True)

    async def reset_for_reprocessing(self, document_id: int) -> DocumentRecord:
        async with self._lock(document_id):
            doc = self._docs.get(document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            _check_transition(document_id, doc.status, DocumentStatus.PENDING)
            updated = doc.model_copy(
                update={
                    "status": DocumentStatus.PENDING,
                    "ocr_text": None,
                    "ai_classification": None,
                    "confidence_score": None,
                    "error_message": None,
                    "processed_at": None,
                    "updated_at": _utcnow(),
                },
                deep=True,
            )
            self._docs[document_id] = updated
        logger.info("Document reset for reprocessing | doc=%s", document_id)
        return updated.model_copy(deep=True)

    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        cutoff = _utcnow() - older_than
        stale = [
            d for d in self._docs.values()
            if d.status == DocumentStatus.PENDING and d.created_at is not None and d.created_at < cutoff
        ]
        stale.sort(key=lambda d: d.id)
        return [d.model_copy(deep=True) for d in stale[:limit]]


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

SessionProvider = Callable[[], AsyncContextManager[AsyncSession]]


def _to_record(doc: Document) -> DocumentRecord:
    return DocumentRecord(
        id=doc.id,
        filename=doc.filename,
        original_filename=doc.original_filename,
        file_size=doc.file_size,
        mime_type=doc.mime_type,
        file_path=doc.file_path,
        status=DocumentStatus(doc.status),
        ocr_text=doc.ocr_text,
        ai_classification=doc.ai_classification,
        confidence_score=doc.confidence_score,
        processing_time=doc.processing_time,
        error_message=doc.error_message,
        metadata=dict(doc.doc_metadata or {}),
        created_at=doc.created_at,
        updated_at=doc.updated_at,
        processed_at=doc.processed_at,
    )


class SqlDocumentStore(DocumentStore):
    """
    PostgreSQL-backed store.

    update_status() runs SELECT … FOR UPDATE inside one transaction, so the
    status check and the write happen under the row lock.
    """

    def __init__(self, session_provider: SessionProvider | None = None) -> None:
        if session_provider is None:
            from docflow.db.session import get_db_session
            session_provider = get_db_session
        self._session = session_provider

    async def create(self, new: NewDocument) -> DocumentRecord:
        async with self._session() as db:
            doc = Document(
                filename=new.filename,
                original_filename=new.original_filename,
                file_size=new.file_size,
                mime_type=new.mime_type,
                file_path=new.file_path,
                status=DocumentStatus.PENDING.value,
                doc_metadata=dict(new.metadata),
            )
            db.add(doc)
            await db.flush()       # assigns id
            await db.refresh(doc)  # server defaults (created_at)
            record = _to_record(doc)
        logger.info("Document created | doc=%s file=%s", record.id, new.filename)
        return record

    async def find_by_id(self, document_id: int) -> DocumentRecord | None:
        async with self._session() as db:
            result = await db.execute(select(Document).where(Document.id == document_id))
            doc = result.scalars().first()
            return _to_record(doc) if doc else None

    async def update_status(
        self,
        document_id: int,
        status: DocumentStatus,
        *,
        ocr_text: str | None = None,
        ai_classification: str | None = None,
        confidence_score: float | None = None,
        processing_time: int | None = None,
        file_path: str | None = None,
        metadata: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> DocumentRecord:
        async with self._session() as db:
            result = await db.execute(
                select(Document).where(Document.id == document_id).with_for_update()
            )
            doc = result.scalars().first()
            if doc is None:
                raise DocumentNotFoundError(document_id)

            current = DocumentStatus(doc.status)
            _check_transition(document_id, current, status)

            doc.status = status.value
            if ocr_text is not None:
                doc.ocr_text = ocr_text
            if ai_classification is not None:
                doc.ai_classification = ai_classification
            if confidence_score is not None:
                doc.confidence_score = confidence_score
            if processing_time is not None:
                doc.processing_time = processing_time
            if file_path is not None:
                doc.file_path = file_path
            if metadata:
                # reassign so the JSONB column is flagged dirty
                doc.doc_metadata = {**(doc.doc_metadata or {}), **metadata}
            if error_message is not None:
                doc.error_message = error_message

            now = _utcnow()
            doc.updated_at = now
            if status == DocumentStatus.COMPLETED:
                doc.processed_at = now

            await db.flush()
            record = _to_record(doc)

        logger.info("Document status updated | doc=%s %s -> %s", document_id, current.value, status.value)
        return record

    async def reset_for_reprocessing(self, document_id: int) -> DocumentRecord:
        async with self._session() as db:
            result = await db.execute(
                select(Document).where(Document.id == document_id).with_for_update()
            )
            doc = result.scalars().first()
            if doc is None:
                raise DocumentNotFoundError(document_id)
            _check_transition(document_id, DocumentStatus(doc.status), DocumentStatus.PENDING)

            doc.status = DocumentStatus.PENDING.value
            doc.ocr_text = None
            doc.ai_classification = None
            doc.confidence_score = None
            doc.error_message = None
            doc.processed_at = None
            doc.updated_at = _utcnow()
            await db.flush()
            record = _to_record(doc)

        logger.info("Document reset for reprocessing | doc=%s", document_id)
        return record

    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        cutoff = _utcnow() - older_than
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(Document.status == DocumentStatus.PENDING.value, Document.created_at < cutoff)
                .order_by(Document.id)
                .limit(limit)
            )
            return [_to_record(d) for d in result.scalars().all()]

    async def close(self) -> None:
        from docflow.db.session import dispose_engine
        await dispose_engine()


def create_document_store(settings: Settings) -> DocumentStore:
    """Select the store backend from config."""
    backend = settings.document_store_backend.lower()

    if backend == "sql":
        return SqlDocumentStore()
    if backend == "memory":
        return InMemoryDocumentStore()

    raise ValueError(
        f"Unknown document store backend: '{backend}'. Valid options: 'sql', 'memory'"
    )
