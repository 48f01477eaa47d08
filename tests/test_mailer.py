from __future__ import annotations

import requests

from routedesk import mailer
from routedesk.config import Settings


class FakeResponse:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


def test_send_mail_without_relay_only_logs(monkeypatch):
    calls = []
    monkeypatch.setattr(requests, "request", lambda *args, **kwargs: calls.append(args))
    assert mailer.send_mail(Settings(database_url="x"), "a@b.c", "Hi", "Body") is False
    assert calls == []


def test_send_mail_posts_to_the_relay(monkeypatch):
    calls = []

    def fake_request(method, url, json=None, timeout=None):
        calls.append((method, url, json, timeout))
        return FakeResponse(202, {"queued": True})

    monkeypatch.setattr(requests, "request", fake_request)
    settings = Settings(database_url="x", mail_relay_url="http://relay.test/send", mail_timeout_seconds=2.5)
    assert mailer.send_mail(settings, "a@b.c", "Hi", "Body") is True
    assert calls == [("POST", "http://relay.test/send", {"to": "a@b.c", "subject": "Hi", "body": "Body"}, 2.5)]


def test_relay_errors_are_reported(monkeypatch):
    monkeypatch.setattr(requests, "request", lambda *args, **kwargs: FakeResponse(500, text="down"))
    body, status = mailer.relay_request("POST", "http://relay.test/send", {})
    assert status == 500
    assert body["response"] == {"raw": "down"}


def test_unreachable_relay_returns_502(monkeypatch):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "request", refuse)
    body, status = mailer.relay_request("POST", "http://relay.test/send", {})
    assert status == 502
    assert "error" in body
