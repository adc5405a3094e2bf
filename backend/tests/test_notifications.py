from types import SimpleNamespace

import requests

from backend.services import notifications
from backend.services.notifications import EventType, Notice, WebhookNotifier, dispatch, publish
from backend.tests.support import RecordingNotifier


def test_dispatch_without_recipients_does_not_call_transport():
    notifier = RecordingNotifier()

    result = dispatch(notifier, EventType.po_closed, [None, ""], {"document_no": "PO-1"})

    assert result.sent is False
    assert notifier.calls == []


def test_dispatch_deduplicates_recipients():
    notifier = RecordingNotifier()

    result = dispatch(notifier, EventType.po_closed, ["b@x.io", "a@x.io", "b@x.io"], {})

    assert result.recipient_count == 2
    assert notifier.calls[0][1] == ["a@x.io", "b@x.io"]


def test_publish_never_raises():
    result = publish(RecordingNotifier(fail=True), [Notice(EventType.prf_submitted, ["a@x.io"], {})])

    assert result.sent is False
    assert "SMTP" in result.error


def test_webhook_notifier_posts_event(monkeypatch):
    sent = {}

    def fake_post(url, json, timeout):
        sent.update(url=url, json=json, timeout=timeout)
        return SimpleNamespace(status_code=202)

    monkeypatch.setattr(requests, "post", fake_post)

    result = WebhookNotifier("http://relay.local/send", timeout=2).notify(
        EventType.ncr_created, ["a@x.io"], {"document_no": "NCR-2026-001"}
    )

    assert result.sent is True
    assert sent["json"] == {"event": "NCR_CREATED", "to": ["a@x.io"], "data": {"document_no": "NCR-2026-001"}}
    assert sent["timeout"] == 2


def test_webhook_error_status_is_not_sent(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda url, json, timeout: SimpleNamespace(status_code=503))

    result = WebhookNotifier("http://relay.local/send").notify(EventType.po_closed, ["a@x.io"], {})

    assert result.sent is False
    assert "503" in result.error


def test_notifier_from_env(monkeypatch):
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    assert isinstance(notifications.notifier_from_env(), notifications.LoggingNotifier)

    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "http://relay.local/send")
    assert isinstance(notifications.notifier_from_env(), WebhookNotifier)
