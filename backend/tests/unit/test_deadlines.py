"""
Unit Tests — stage deadlines and service timeout settings
═════════════════════════════════════════════════════════
An outbound AI call must always give up before the stage that made it, so
the stage can still fall back and finish.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from docflow.core.config import Settings
from docflow.core.deadlines import remaining_budget, stage_deadline
from docflow.core.exceptions import DelegateError
from docflow.processing.classifier import ClassificationDelegate


@pytest.mark.unit
class TestRemainingBudget:

    def test_no_deadline_keeps_the_configured_timeout(self):
        assert remaining_budget(120.0) == 120.0

    def test_budget_shrinks_to_fit_the_stage(self):
        with stage_deadline(1.0):
            budget = remaining_budget(120.0)
        assert 0.8 < budget < 1.0

    def test_shorter_timeout_wins(self):
        with stage_deadline(60.0):
            assert remaining_budget(5.0) == 5.0

    def test_deadline_is_scoped(self):
        with stage_deadline(1.0):
            pass
        assert remaining_budget(30.0) == 30.0

    def test_no_seconds_means_unbounded(self):
        with stage_deadline(None):
            assert remaining_budget(30.0) == 30.0

    def test_expired_stage_still_gets_a_positive_budget(self):
        with stage_deadline(0.001):
            budget = remaining_budget(30.0)
        assert budget > 0

    async def test_delegate_gives_up_inside_the_stage(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"document_type": "invoice"})

        delegate = ClassificationDelegate("http://ai.test", timeout=60.0, transport=httpx.MockTransport(handler))

        with stage_deadline(0.3):
            with pytest.raises(DelegateError, match="timed out"):
                await delegate.classify("text", "a.pdf")


@pytest.mark.unit
class TestServiceTimeoutSettings:

    def test_defaults_are_accepted(self):
        cfg = Settings()
        assert cfg.ocr_service_timeout <= cfg.ocr_timeout
        assert cfg.classify_service_timeout <= cfg.classification_timeout

    def test_ocr_call_longer_than_its_stage_is_rejected(self):
        with pytest.raises(ValidationError, match="ocr_service_timeout"):
            Settings(ocr_timeout=30.0, ocr_service_timeout=45.0)

    def test_classify_call_longer_than_its_stage_is_rejected(self):
        with pytest.raises(ValidationError, match="classify_service_timeout"):
            Settings(classification_timeout=10.0, classify_service_timeout=20.0)
