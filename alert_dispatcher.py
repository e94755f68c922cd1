"""
Alert delivery.

The ingestion engine produces AlertIntent objects and hands them to an
AlertDispatcher. Delivery is best-effort: a dispatcher raises
AlertDispatchFailure when nothing could be delivered, and the engine logs
that failure without letting it touch ingestion.

Implementations:
    WebPushAlertDispatcher  - Web Push (pywebpush) to stored subscriptions
    WebhookAlertDispatcher  - JSON POST (httpx) to an operator endpoint
    FanoutAlertDispatcher   - sends to several dispatchers
    LoggingAlertDispatcher  - prints intents; used when nothing is configured
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional, Sequence
import asyncio
import json

import httpx
from pywebpush import WebPushException, webpush

from ingest_models import AlertDispatchFailure, AlertIntent, AlertKind
from push_subscriptions import STAFF_ROLES, PushSubscription, PushSubscriptionStore


ALERT_TITLES = {
    AlertKind.GEOFENCE_BREACH: "Route alert",
    AlertKind.MISSED_PICKUP: "Missed pickup",
    AlertKind.EMERGENCY: "EMERGENCY",
    AlertKind.SPEED_VIOLATION: "Speed alert",
    AlertKind.STUDENT_PICKUP: "Student picked up",
    AlertKind.STUDENT_DROP: "Student dropped off",
}


class AlertDispatcher(ABC):
    """Interface for delivering alert intents to humans."""

    @abstractmethod
    async def dispatch(self, intent: AlertIntent) -> None:
        """
        Deliver one intent.

        Raises AlertDispatchFailure when delivery failed outright. Partial
        delivery (some recipients reached) is not an error.
        """
        pass

    async def close(self) -> None:
        return None


def push_payload(intent: AlertIntent) -> Dict[str, Any]:
    tag_parts = [intent.kind.value, intent.trip_id or intent.bus_id or "", intent.student_id or intent.stop_id or ""]
    return {
        "title": ALERT_TITLES.get(intent.kind, "Bus alert"),
        "body": intent.message[:200],
        "tag": "-".join(p for p in tag_parts if p),
        "severity": intent.severity,
        "data": intent.to_dict(),
    }


class LoggingAlertDispatcher(AlertDispatcher):
    def __init__(self, maxlen: int = 200):
        self.sent: deque = deque(maxlen=maxlen)

    async def dispatch(self, intent: AlertIntent) -> None:
        self.sent.append(intent.to_dict())
        print(f"[alerts] {intent.kind.value} ({intent.severity}): {intent.message}")


class WebPushAlertDispatcher(AlertDispatcher):
    """
    Sends intents as Web Push notifications.

    Intents with recipient_ids go to those users' subscriptions; intents
    without recipients go to staff subscriptions. Subscriptions the push
    service reports as gone (HTTP 410) are removed from the store.
    """

    def __init__(
        self,
        store: PushSubscriptionStore,
        vapid_private_key: str,
        vapid_subject: str,
        staff_roles: Sequence[str] = STAFF_ROLES,
    ):
        self.store = store
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.staff_roles = tuple(staff_roles)

    async def _targets(self, intent: AlertIntent) -> List[PushSubscription]:
        if intent.recipient_ids:
            return await self.store.get_for_users(intent.recipient_ids)
        return await self.store.get_for_roles(self.staff_roles)

    def _send(self, sub: PushSubscription, payload: str) -> None:
        webpush(
            subscription_info=sub.to_subscription_info(),
            data=payload,
            vapid_private_key=self.vapid_private_key,
            vapid_claims={"sub": self.vapid_subject},
        )

    async def dispatch(self, intent: AlertIntent) -> None:
        subscriptions = await self._targets(intent)
        if not subscriptions:
            print(f"[push] no subscribers for {intent.kind.value}")
            return
        payload = json.dumps(push_payload(intent))
        sent_count = 0
        for sub in subscriptions:
            try:
                await asyncio.to_thread(self._send, sub, payload)
                sent_count += 1
            except WebPushException as e:
                if e.response is not None and e.response.status_code == 410:
                    print("[push] removing expired subscription")
                    await self.store.remove_subscription(sub.endpoint)
                else:
                    print(f"[push] WebPushException: {e}")
        print(f"[push] sent {intent.kind.value} to {sent_count}/{len(subscriptions)} subscribers")
        if sent_count == 0:
            raise AlertDispatchFailure("push_failed", kind=intent.kind.value, subscribers=len(subscriptions))


class WebhookAlertDispatcher(AlertDispatcher):
    """POSTs each intent as JSON to an operator-provided URL."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout_s: float = 5.0):
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, connect=timeout_s))

    async def dispatch(self, intent: AlertIntent) -> None:
        try:
            resp = await self.client.post(self.url, json=intent.to_dict())
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise AlertDispatchFailure(
                "webhook_rejected", kind=intent.kind.value, status_code=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise AlertDispatchFailure("webhook_unreachable", kind=intent.kind.value, error=str(exc)) from exc

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class FanoutAlertDispatcher(AlertDispatcher):
    """Delivers to every child; fails only when every child failed."""

    def __init__(self, dispatchers: Sequence[AlertDispatcher]):
        self.dispatchers = list(dispatchers)

    async def dispatch(self, intent: AlertIntent) -> None:
        if not self.dispatchers:
            return
        results = await asyncio.gather(
            *(d.dispatch(intent) for d in self.dispatchers), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            print(f"[alerts] dispatcher failed for {intent.kind.value}: {failure!r}")
        if len(failures) == len(self.dispatchers):
            raise AlertDispatchFailure("all_dispatchers_failed", kind=intent.kind.value)

    async def close(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.close()


__all__ = [
    "AlertDispatcher",
    "FanoutAlertDispatcher",
    "LoggingAlertDispatcher",
    "WebPushAlertDispatcher",
    "WebhookAlertDispatcher",
    "push_payload",
]
