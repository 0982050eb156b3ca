"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  configuration : test_settings
  services      : store, files, make_gateway, gateway, make_manager
  file factories: make_pdf, make_png, stage_document

Environment strategy:
  - Settings are built per test with ai_service_url="" so no HTTP delegate
    is ever constructed implicitly; delegate tests pass an
    httpx.MockTransport explicitly.
  - The image OCR engine is replaced by StaticOcrEngine, so no tesseract
    binary is needed.
  - Document store and work queue are the in-memory backends; the Redis
    queue is tested against fakeredis.
  - Uploads land in pytest's tmp_path.

How to run:
  pytest                                      # all tests
  pytest -m unit                              # unit tests only (fast, no I/O beyond tmp_path)
  pytest -m integration                       # pipeline + API tests
  pytest backend/tests/unit/test_files.py     # single file
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from PIL import Image

from docflow.core.config import Settings
from docflow.processing.files import FileProcessor
from docflow.processing.ocr import OcrEngine, OcrService
from docflow.schemas.documents import DocumentRecord, NewDocument
from docflow.services.ai_gateway import AIGateway
from docflow.services.document_store import InMemoryDocumentStore
from docflow.workers.manager import ProcessingQueueManager


# ─────────────────────────────────────────────────────────────────────────────
# Test doubles
# ─────────────────────────────────────────────────────────────────────────────

class StaticOcrEngine(OcrEngine):
    """Image OCR stand-in: fixed text, optional failure or delay, call count."""

    def __init__(self, text: str = "", error: Exception | None = None, delay: float = 0.0) -> None:
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0

    @property
    def name(self) -> str:
        return "static"

    async def recognize(self, path: Path) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Small pools and near-zero backoff so retry paths finish in milliseconds."""
    return Settings(
        ai_service_url="",
        upload_dir=str(tmp_path / "uploads"),
        document_store_backend="memory",
        queue_backend="memory",
        intake_concurrency=2,
        ocr_concurrency=2,
        classification_concurrency=2,
        indexing_concurrency=2,
        intake_backoff_delay=0.01,
        ocr_backoff_delay=0.01,
        classification_backoff_delay=0.01,
        indexing_backoff_delay=0.01,
        ocr_timeout=5.0,
        ocr_service_timeout=5.0,
        classification_timeout=5.0,
        classify_service_timeout=5.0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Service fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def files(test_settings) -> FileProcessor:
    return FileProcessor(test_settings)


@pytest.fixture
def make_gateway(test_settings):
    """Factory: AIGateway whose image OCR runs through the given engine."""
    def _build(engine: OcrEngine | None = None, settings: Settings | None = None) -> AIGateway:
        cfg = settings or test_settings
        engine = engine or StaticOcrEngine("Invoice total $1,200.00 due 03/04/2024 for PROJ-0042")
        return AIGateway(cfg, ocr=OcrService(cfg, image_engine=engine))
    return _build


@pytest.fixture
def gateway(make_gateway) -> AIGateway:
    return make_gateway()


@pytest_asyncio.fixture
async def make_manager(test_settings, store, files, gateway):
    """
    Factory: ProcessingQueueManager over the in-memory queue.
    Every manager built here is closed at teardown.
    """
    built: list[ProcessingQueueManager] = []

    def _build(*, ai: AIGateway | None = None, indexer=None, settings: Settings | None = None) -> ProcessingQueueManager:
        manager = ProcessingQueueManager(
            store=store,
            ai=ai or gateway,
            files=files,
            indexer=indexer,
            settings=settings or test_settings,
            poll_timeout=0.05,
        )
        built.append(manager)
        return manager

    yield _build

    for manager in built:
        await manager.close_queues()


# ─────────────────────────────────────────────────────────────────────────────
# File factories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_pdf():
    """Write a PDF-looking file of at least `size` bytes."""
    def _write(path: Path, size: int = 256) -> Path:
        header = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(header + b"x" * max(0, size - len(header)))
        return path
    return _write


@pytest.fixture
def make_png():
    """Write a real PNG of the given pixel size."""
    def _write(path: Path, size: tuple[int, int] = (100, 50), mode: str = "RGB") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
        Image.new(mode, size, color).save(path, format="PNG")
        return path
    return _write


@pytest.fixture
def stage_document(test_settings, store):
    """
    Mimic the upload ingress: put `path` under {upload_dir}/temp and create
    the pending document row. Returns the DocumentRecord.
    """
    async def _stage(path: Path) -> DocumentRecord:
        return await store.create(NewDocument(
            filename=path.name,
            original_filename=path.name,
            file_size=path.stat().st_size,
            mime_type="application/octet-stream",
            file_path=str(path),
        ))
    return _stage


@pytest.fixture
def temp_dir(test_settings) -> Path:
    path = Path(test_settings.upload_dir) / "temp"
    path.mkdir(parents=True, exist_ok=True)
    return path
