from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx

from ipma_prep.config import Settings
from ipma_prep.email_delivery import (
    EmailMessage,
    HttpEmailSender,
    LoggingEmailSender,
    build_sender,
    days_left,
    render_template,
)
from ipma_prep.models import Subscription, UserProfile

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _subscription(delta: timedelta) -> Subscription:
    return Subscription(user_id="u1", start_date=NOW - timedelta(days=50), end_date=NOW + delta)


def test_days_left_rounds_up() -> None:
    assert days_left(_subscription(timedelta(days=6, hours=1)), NOW) == 7
    assert days_left(_subscription(timedelta(hours=3)), NOW) == 1


def test_render_warning_template() -> None:
    user = UserProfile(email="ann@example.com", name="Ann")

    message = render_template("expiry_warning", user, _subscription(timedelta(days=5)), now=NOW)

    assert message.to == "ann@example.com"
    assert message.body.startswith("Dear Ann,")
    assert "expire in 5 days" in message.body
    assert "{{" not in message.body


def test_render_extension_template_falls_back_to_email_name() -> None:
    user = UserProfile(email="bob@example.com")

    message = render_template("subscription_extended", user, _subscription(timedelta(days=20)), extension_days=20)

    assert message.body.startswith("Dear bob,")
    assert "2025-06-21" in message.body


def test_http_sender_posts_json_with_bearer_token() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(202, json={"id": "msg-1"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    sender = HttpEmailSender("https://mail.example/send", api_key="secret", sender="prep@example.com", client=client)

    result = sender.send(EmailMessage(to="ann@example.com", subject="Hi", body="Hello"))

    assert result.success is True
    assert result.message_id == "msg-1"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"] == {"from": "prep@example.com", "to": "ann@example.com", "subject": "Hi", "body": "Hello"}


def test_http_sender_reports_failures() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    sender = HttpEmailSender("https://mail.example/send", client=client)

    result = sender.send(EmailMessage(to="ann@example.com", subject="Hi", body="Hello"))

    assert result.success is False
    assert result.error


def test_build_sender_uses_settings() -> None:
    assert isinstance(build_sender(Settings()), LoggingEmailSender)
    assert isinstance(
        build_sender(Settings(IPMA_EMAIL_ENDPOINT="https://mail.example/send")),
        HttpEmailSender,
    )
