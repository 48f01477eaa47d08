"""Account emails through an HTTP mail relay."""

from __future__ import annotations

import logging
from typing import Any

import requests

from .config import Settings

_logger = logging.getLogger(__name__)


def relay_request(method: str, url: str, payload: dict[str, Any] | None = None, timeout: float = 5.0) -> tuple[Any, int]:
    try:
        response = requests.request(method, url, json=payload, timeout=timeout)
    except requests.RequestException:
        _logger.exception("Mail relay request failed")
        return {"error": "Mail relay is unavailable"}, 502

    try:
        body: Any = response.json()
    except ValueError:
        body = {"raw": response.text}

    if response.status_code >= 400:
        return {
            "error": "Mail relay returned an error",
            "status": response.status_code,
            "response": body,
        }, response.status_code

    return body, response.status_code


def send_mail(settings: Settings, to: str, subject: str, body: str) -> bool:
    if not settings.mail_relay_url:
        _logger.warning("MAIL_RELAY_URL is not configured; mail to %s not sent: %s\n%s", to, subject, body)
        return False

    result, status = relay_request(
        "POST",
        settings.mail_relay_url,
        payload={"to": to, "subject": subject, "body": body},
        timeout=settings.mail_timeout_seconds,
    )
    if status >= 400:
        _logger.error("Mail to %s failed with %s: %s", to, status, result)
        return False
    return True
