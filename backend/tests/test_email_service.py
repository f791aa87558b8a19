"""
Email Service Tests

The Resend HTTP call is patched; these check request shape and the
EmailDeliveryError contract that delivery relies on.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from services.email_service import EmailService, SUBJECT_LINES, RESEND_API_URL
from services.errors import EmailDeliveryError


def _mock_client(response=None, error=None):
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    if error:
        client.post = AsyncMock(side_effect=error)
    else:
        client.post = AsyncMock(return_value=response)
    return client


def _response(status_code, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    response.json.return_value = body or {}
    response.text = str(body)
    return response


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
    monkeypatch.setenv("EMAIL_FROM", "Cupid's Arrow <love@test.app>")
    return EmailService()


async def test_not_configured(monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    service = EmailService()

    assert service.is_configured() is False
    with pytest.raises(EmailDeliveryError):
        await service.send_email("a@example.com", "Hi", "<p>Hi</p>")


async def test_sends_to_resend(configured):
    client = _mock_client(_response(200, {"id": "re_email_1"}))

    with patch("services.email_service.httpx.AsyncClient", return_value=client):
        email_id = await configured.send_experience_email(
            to_email="asha@example.com",
            recipient_name="Asha",
            sender_name=None,
            experience_type="CRUSH",
            experience_id="exp_1",
            experience_url="https://app.test/v/exp_1",
        )

    assert email_id == "re_email_1"
    url = client.post.call_args.args[0]
    kwargs = client.post.call_args.kwargs
    assert url == RESEND_API_URL
    assert kwargs["headers"]["Authorization"] == "Bearer re_test_key"
    payload = kwargs["json"]
    assert payload["to"] == ["asha@example.com"]
    assert payload["from"] == "Cupid's Arrow <love@test.app>"
    assert payload["subject"] in SUBJECT_LINES["CRUSH"]
    assert "secret admirer" in payload["html"]
    assert "https://app.test/v/exp_1" in payload["html"]


async def test_non_2xx_raises(configured):
    client = _mock_client(_response(422, {"message": "invalid from"}))

    with patch("services.email_service.httpx.AsyncClient", return_value=client):
        with pytest.raises(EmailDeliveryError):
            await configured.send_email("a@example.com", "Hi", "<p>Hi</p>")


async def test_network_error_raises(configured):
    client = _mock_client(error=httpx.ConnectError("connection refused"))

    with patch("services.email_service.httpx.AsyncClient", return_value=client):
        with pytest.raises(EmailDeliveryError):
            await configured.send_email("a@example.com", "Hi", "<p>Hi</p>")


async def test_sender_name_is_escaped(configured):
    client = _mock_client(_response(200, {"id": "re_email_2"}))

    with patch("services.email_service.httpx.AsyncClient", return_value=client):
        await configured.send_experience_email(
            to_email="asha@example.com",
            recipient_name="Asha",
            sender_name="<script>Ravi</script>",
            experience_type="COUPLE",
            experience_id="exp_2",
            experience_url="https://app.test/v/exp_2",
        )

    html = client.post.call_args.kwargs["json"]["html"]
    assert "<script>" not in html
    assert "&lt;script&gt;Ravi" in html


async def test_accepted_without_body_counts_as_sent(configured):
    client = _mock_client(httpx.Response(202, content=b""))

    with patch("services.email_service.httpx.AsyncClient", return_value=client):
        email_id = await configured.send_email("a@example.com", "Hi", "<p>Hi</p>")

    assert email_id == ""
