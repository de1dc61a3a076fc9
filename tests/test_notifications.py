import json
import logging

import httpx

from lending.services.http_client import OptimizedHTTPClient
from lending.services.notifications import (
    LoggingNotificationSink,
    WebhookNotificationSink,
    build_notification_sink,
)


def _client(handler):
    return OptimizedHTTPClient(timeout=1, transport=httpx.MockTransport(handler))


def test_webhook_posts_event_as_json():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(204)

    sink = WebhookNotificationSink("http://hooks.test/lending", client=_client(handler), retries=1)
    try:
        future = sink.publish("book_issued", {"book_id": "b1", "patron_id": "p1"})
        assert future.result(timeout=5) is True
    finally:
        sink.close()

    assert received[0]["event"] == "book_issued"
    assert received[0]["payload"] == {"book_id": "b1", "patron_id": "p1"}
    assert "sent_at" in received[0]


def test_webhook_error_status_is_reported_not_raised(caplog):
    sink = WebhookNotificationSink("http://hooks.test/lending",
                                   client=_client(lambda request: httpx.Response(500)), retries=1)
    try:
        with caplog.at_level(logging.WARNING):
            assert sink.publish("book_returned", {}).result(timeout=5) is False
    finally:
        sink.close()
    assert "rejected book_returned" in caplog.text


def test_webhook_transport_failure_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    sink = WebhookNotificationSink("http://hooks.test/lending", client=_client(handler), retries=1)
    try:
        assert sink.publish("book_added", {"book_id": "b1"}).result(timeout=5) is False
    finally:
        sink.close()


def test_post_with_retry_retries_transport_errors():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 2:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(200)

    with _client(handler) as client:
        response = client.post_with_retry("http://hooks.test/x", retries=3, backoff=0, json={})
    assert response.status_code == 200
    assert len(attempts) == 2


def test_logging_sink_logs_event(caplog):
    with caplog.at_level(logging.INFO, logger="lending.services.notifications"):
        LoggingNotificationSink().publish("book_removed", {"book_id": "b1"})
    assert "book_removed" in caplog.text


def test_build_notification_sink_picks_webhook_when_configured():
    sink = build_notification_sink("http://hooks.test/lending")
    try:
        assert isinstance(sink, WebhookNotificationSink)
    finally:
        sink.close()
    assert isinstance(build_notification_sink(""), LoggingNotificationSink)
