"""
Composed FastAPI Dependencies

The pipeline's service objects are built once per process by create_app()
and parked on app.state. Route handlers receive them through these
dependencies, never from module globals.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from docflow.services.ai_gateway import AIGateway
from docflow.services.document_store import DocumentStore
from docflow.services.ingestion import IngestionService
from docflow.workers.manager import ProcessingQueueManager


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_manager(request: Request) -> ProcessingQueueManager:
    return request.app.state.manager


def get_ai_gateway(request: Request) -> AIGateway:
    return request.app.state.ai


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Store     = Annotated[DocumentStore, Depends(get_store)]
Manager   = Annotated[ProcessingQueueManager, Depends(get_manager)]
Gateway   = Annotated[AIGateway, Depends(get_ai_gateway)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion)]
