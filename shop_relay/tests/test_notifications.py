import logging
from unittest.mock import AsyncMock, patch

import pytest

from shop_relay.services import notifications


@pytest.mark.asyncio
async def test_console_mode_logs_code(monkeypatch, caplog):
    monkeypatch.setattr(notifications, "EMAIL_SERVICE", "console")
    with caplog.at_level(logging.INFO, logger="shop_relay.services.notifications"):
        assert await notifications.send_verification_code("merchant@shop.com", "123456") is True
    assert "123456" in caplog.text


@pytest.mark.asyncio
async def test_smtp_sends_code(monkeypatch):
    monkeypatch.setattr(notifications, "EMAIL_SERVICE", "smtp")
    with patch("shop_relay.services.notifications.send_email_html", new_callable=AsyncMock) as send:
        assert await notifications.send_verification_code("merchant@shop.com", "123456", "Jane") is True

    subject, recipients, html, text = send.await_args.args
    assert recipients == ["merchant@shop.com"]
    assert "123456" in html and "123456" in text
    assert "Hello Jane!" in html


@pytest.mark.asyncio
async def test_failed_delivery_keeps_code_in_logs(monkeypatch, caplog):
    monkeypatch.setattr(notifications, "EMAIL_SERVICE", "smtp")
    with patch("shop_relay.services.notifications.send_email_html", new_callable=AsyncMock, side_effect=OSError("smtp down")):
        with caplog.at_level(logging.WARNING, logger="shop_relay.services.notifications"):
            assert await notifications.send_verification_code("merchant@shop.com", "654321") is False
    assert "654321" in caplog.text


@pytest.mark.asyncio
async def test_credentials_never_logged(monkeypatch, caplog):
    monkeypatch.setattr(notifications, "EMAIL_SERVICE", "smtp")
    with patch("shop_relay.services.notifications.send_email_html", new_callable=AsyncMock, side_effect=OSError("smtp down")):
        with caplog.at_level(logging.DEBUG, logger="shop_relay.services.notifications"):
            assert await notifications.send_new_account_credentials("merchant@shop.com", "Pa$$word-1234567890") is False
    assert "Pa$$word-1234567890" not in caplog.text


@pytest.mark.asyncio
async def test_smtp_requires_credentials(monkeypatch):
    monkeypatch.setattr(notifications, "MAIL_USERNAME", None)
    with pytest.raises(RuntimeError):
        await notifications.send_email_html("Subject", ["merchant@shop.com"], "<p>hi</p>")
