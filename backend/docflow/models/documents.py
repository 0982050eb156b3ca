"""
SQLAlchemy ORM Models — Documents

Maps the `documents` table created by the platform's schema migration.
Using SQLAlchemy 2.x mapped classes for full async support.

Only the pipeline-owned columns are written by this service:
status, ocr_text, ai_classification, confidence_score, processing_time,
file_path, metadata, error_message, processed_at. Ownership columns
(project_id, uploaded_by) belong to the CRUD layer and are nullable here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Document(Base):
    """
    One uploaded file moving through intake → OCR → classification → indexing.

    State machine (status column):
        pending    — staged in the temp upload dir, intake not yet started
        processing — a pipeline stage is running
        completed  — indexing finished
        failed     — a stage exhausted its retries (see error_message)
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="documents_confidence_check",
        ),
        Index("idx_documents_status",            "status"),
        Index("idx_documents_created_at",        "created_at"),
        Index("idx_documents_ai_classification", "ai_classification"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    filename:          Mapped[str] = mapped_column(String(255), nullable=False)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size:         Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type:         Mapped[str] = mapped_column(String(100), nullable=False)
    file_path: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Temp staging path until intake relocates the file, then the permanent path",
    )

    project_id:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uploaded_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    ai_classification: Mapped[Optional[str]]   = mapped_column(String(100), nullable=True)
    confidence_score:  Mapped[Optional[float]] = mapped_column(Numeric(5, 4, asdecimal=False), nullable=True)
    processing_time:   Mapped[Optional[int]]   = mapped_column(Integer, nullable=True, comment="Last stage duration (ms)")
    ocr_text:          Mapped[Optional[str]]   = mapped_column(Text, nullable=True)
    error_message:     Mapped[Optional[str]]   = mapped_column(Text, nullable=True)

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Document id={self.id} status={self.status} file={self.filename!r}>"
