import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
from pywebpush import WebPushException

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import alert_dispatcher  # noqa: E402
from alert_dispatcher import (  # noqa: E402
    AlertDispatcher,
    FanoutAlertDispatcher,
    LoggingAlertDispatcher,
    WebhookAlertDispatcher,
    WebPushAlertDispatcher,
    push_payload,
)
from ingest_models import AlertDispatchFailure, AlertIntent, AlertKind  # noqa: E402
from push_subscriptions import PushSubscriptionStore  # noqa: E402


BASE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
KEYS = {"p256dh": "key", "auth": "secret"}


def _intent(kind=AlertKind.MISSED_PICKUP, recipients=None):
    return AlertIntent(
        kind=kind,
        message="S1 was not picked up at STOP1",
        timestamp=BASE,
        trip_id="T1",
        student_id="S1",
        recipient_ids=list(recipients or []),
    )


class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


class FailingDispatcher(AlertDispatcher):
    async def dispatch(self, intent):
        raise AlertDispatchFailure("boom")


async def test_subscription_store_filters_by_user_and_role(tmp_path):
    store = PushSubscriptionStore(tmp_path / "subs.json")
    assert await store.add_subscription("https://push/a", KEYS, user_id="P1", role="parent") is True
    assert await store.add_subscription("https://push/b", KEYS, user_id="U9", role="school_staff") is True
    assert await store.add_subscription("https://push/a", KEYS, user_id="P1", role="parent") is False
    assert await store.add_subscription("https://push/c", {"p256dh": ""}) is False

    assert [s.endpoint for s in await store.get_for_users(["P1"])] == ["https://push/a"]
    assert [s.endpoint for s in await store.get_for_roles()] == ["https://push/b"]

    reloaded = PushSubscriptionStore(tmp_path / "subs.json")
    assert await reloaded.count() == 2
    assert await reloaded.remove_subscription("https://push/a") is True
    assert await reloaded.remove_subscription("https://push/a") is False


def test_push_payload_shape():
    payload = push_payload(_intent())
    assert payload["title"] == "Missed pickup"
    assert payload["tag"] == "missed_pickup-T1-S1"
    assert payload["data"]["student_id"] == "S1"


async def test_webpush_targets_recipients_and_drops_gone_subscriptions(tmp_path, monkeypatch):
    store = PushSubscriptionStore(tmp_path / "subs.json")
    await store.add_subscription("https://push/parent", KEYS, user_id="P1", role="parent")
    await store.add_subscription("https://push/gone", KEYS, user_id="P1", role="parent")
    await store.add_subscription("https://push/staff", KEYS, user_id="U1", role="admin")

    sent = []

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims):
        if subscription_info["endpoint"].endswith("gone"):
            raise WebPushException("gone", response=_Response(410))
        sent.append((subscription_info["endpoint"], json.loads(data), vapid_claims))

    monkeypatch.setattr(alert_dispatcher, "webpush", fake_webpush)
    dispatcher = WebPushAlertDispatcher(store, "private", "mailto:ops@example.com")

    await dispatcher.dispatch(_intent(AlertKind.STUDENT_PICKUP, recipients=["P1"]))
    assert [endpoint for endpoint, _, _ in sent] == ["https://push/parent"]
    assert sent[0][2] == {"sub": "mailto:ops@example.com"}
    assert [s.endpoint for s in await store.get_all_subscriptions()] == ["https://push/parent", "https://push/staff"]

    sent.clear()
    await dispatcher.dispatch(_intent())
    assert [endpoint for endpoint, _, _ in sent] == ["https://push/staff"]


async def test_webpush_raises_when_nothing_delivered(tmp_path, monkeypatch):
    store = PushSubscriptionStore(tmp_path / "subs.json")
    await store.add_subscription("https://push/staff", KEYS, user_id="U1", role="admin")

    def fake_webpush(**kwargs):
        raise WebPushException("server error", response=_Response(500))

    monkeypatch.setattr(alert_dispatcher, "webpush", fake_webpush)
    with pytest.raises(AlertDispatchFailure) as excinfo:
        await WebPushAlertDispatcher(store, "private", "mailto:ops@example.com").dispatch(_intent())
    assert excinfo.value.reason == "push_failed"
    assert await store.count() == 1


async def test_webhook_posts_intent_json():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = WebhookAlertDispatcher("https://ops.example.com/alerts", client=client)
    await dispatcher.dispatch(_intent())
    assert seen[0]["kind"] == "missed_pickup"
    assert seen[0]["timestamp"] == "2024-05-01T08:00:00Z"
    await client.aclose()


async def test_webhook_errors_become_dispatch_failures():
    def rejecting(request):
        return httpx.Response(503)

    def unreachable(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(rejecting)) as client:
        with pytest.raises(AlertDispatchFailure) as excinfo:
            await WebhookAlertDispatcher("https://ops.example.com/alerts", client=client).dispatch(_intent())
    assert excinfo.value.reason == "webhook_rejected"
    assert excinfo.value.detail["status_code"] == 503

    async with httpx.AsyncClient(transport=httpx.MockTransport(unreachable)) as client:
        with pytest.raises(AlertDispatchFailure) as excinfo:
            await WebhookAlertDispatcher("https://ops.example.com/alerts", client=client).dispatch(_intent())
    assert excinfo.value.reason == "webhook_unreachable"


async def test_fanout_fails_only_when_every_child_fails():
    logger = LoggingAlertDispatcher()
    await FanoutAlertDispatcher([FailingDispatcher(), logger]).dispatch(_intent())
    assert logger.sent[-1]["kind"] == "missed_pickup"

    with pytest.raises(AlertDispatchFailure) as excinfo:
        await FanoutAlertDispatcher([FailingDispatcher(), FailingDispatcher()]).dispatch(_intent())
    assert excinfo.value.reason == "all_dispatchers_failed"
