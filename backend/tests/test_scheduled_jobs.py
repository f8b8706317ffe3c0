"""
Tests for the scheduler jobs registered by the application lifespan.
"""
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from main import scheduled_credential_refresh_job, scheduled_receipt_check_job
from pushgate.services.push.receipts import ReceiptCheckResult


def make_app(service):
    app = MagicMock()
    app.state.dispatch_service = service
    return app


class TestCredentialRefreshJob:

    @pytest.mark.asyncio
    async def test_refreshes_all_providers(self):
        service = MagicMock()
        service.refresh_credentials = AsyncMock(return_value={"apns": True, "fcm": True})

        await scheduled_credential_refresh_job(make_app(service))

        service.refresh_credentials.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_failure_logged(self, caplog):
        service = MagicMock()
        service.refresh_credentials = AsyncMock(return_value={"apns": False, "fcm": True})

        with caplog.at_level(logging.WARNING, logger="main"):
            await scheduled_credential_refresh_job(make_app(service))

        assert "Credential refresh incomplete" in caplog.text

    @pytest.mark.asyncio
    async def test_exception_does_not_escape(self, caplog):
        service = MagicMock()
        service.refresh_credentials = AsyncMock(side_effect=RuntimeError("boom"))

        with caplog.at_level(logging.ERROR, logger="main"):
            await scheduled_credential_refresh_job(make_app(service))

        assert "Scheduled credential refresh failed" in caplog.text


class TestReceiptCheckJob:

    @pytest.mark.asyncio
    async def test_skips_fresh_tickets(self):
        service = MagicMock()
        service.check_receipts = AsyncMock(return_value=ReceiptCheckResult(checked=2, delivered=2))

        await scheduled_receipt_check_job(make_app(service))

        service.check_receipts.assert_awaited_once_with(min_age_seconds=60)

    @pytest.mark.asyncio
    async def test_exception_does_not_escape(self, caplog):
        service = MagicMock()
        service.check_receipts = AsyncMock(side_effect=RuntimeError("expo down"))

        with caplog.at_level(logging.ERROR, logger="main"):
            await scheduled_receipt_check_job(make_app(service))

        assert "Scheduled receipt check failed" in caplog.text
