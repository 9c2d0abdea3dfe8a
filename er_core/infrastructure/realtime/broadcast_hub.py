"""In-process topic fan-out for dashboard and patient connections.

Topics are ``hospital:<id>`` and ``encounter:<id>``. A connection is a
callback plus the set of topics it has joined. Delivery is best effort:
a callback that raises is dropped and the client re-syncs over the
polling reads when it reconnects.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class RealtimeEvent(StrEnum):
    ENCOUNTER_UPDATED = "encounter.updated"
    MESSAGE_CREATED = "message.created"
    MESSAGE_READ = "message.read"
    ALERT_CREATED = "alert.created"
    ALERT_ACKNOWLEDGED = "alert.acknowledged"
    ALERT_RESOLVED = "alert.resolved"
    ALERT_ESCALATED = "alert.escalated"


def hospital_topic(hospital_id: int) -> str:
    return f"hospital:{hospital_id}"


def encounter_topic(encounter_id: int) -> str:
    return f"encounter:{encounter_id}"


@dataclass(frozen=True, slots=True)
class BroadcastMessage:
    event: str
    payload: dict[str, Any]


SubscriberCallback = Callable[[BroadcastMessage], None]


class Broadcaster(Protocol):
    def publish(self, topics: Iterable[str], event_name: str, payload: dict[str, Any]) -> int: ...


@dataclass
class _Subscriber:
    id: str
    callback: SubscriberCallback
    topics: set[str] = field(default_factory=set)


class Subscription:
    """Handle returned by :meth:`BroadcastHub.connect`."""

    def __init__(self, hub: BroadcastHub, subscription_id: str) -> None:
        self._hub = hub
        self.id = subscription_id

    @property
    def topics(self) -> frozenset[str]:
        return self._hub.topics_for(self.id)

    @property
    def is_active(self) -> bool:
        return self._hub.is_connected(self.id)

    def join(self, topic: str) -> None:
        self._hub.join(self.id, topic)

    def leave(self, topic: str) -> None:
        self._hub.leave(self.id, topic)

    def close(self) -> None:
        self._hub.disconnect(self.id)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


class BroadcastHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, _Subscriber] = {}
        self._topics: dict[str, set[str]] = {}

    def connect(
        self,
        callback: SubscriberCallback,
        *,
        hospital_id: int | None = None,
        encounter_ids: Iterable[int] = (),
    ) -> Subscription:
        subscription_id = uuid.uuid4().hex
        topics: set[str] = set()
        if hospital_id is not None:
            topics.add(hospital_topic(hospital_id))
        topics.update(encounter_topic(encounter_id) for encounter_id in encounter_ids)
        with self._lock:
            self._subscribers[subscription_id] = _Subscriber(subscription_id, callback)
            for topic in topics:
                self._join_locked(subscription_id, topic)
        logger.debug("Subscriber %s connected to %s", subscription_id, sorted(topics))
        return Subscription(self, subscription_id)

    def join(self, subscription_id: str, topic: str) -> None:
        with self._lock:
            if subscription_id not in self._subscribers:
                return
            self._join_locked(subscription_id, topic)

    def leave(self, subscription_id: str, topic: str) -> None:
        with self._lock:
            subscriber = self._subscribers.get(subscription_id)
            if subscriber is None:
                return
            subscriber.topics.discard(topic)
            self._discard_member_locked(topic, subscription_id)

    def disconnect(self, subscription_id: str) -> None:
        with self._lock:
            subscriber = self._subscribers.pop(subscription_id, None)
            if subscriber is None:
                return
            for topic in subscriber.topics:
                self._discard_member_locked(topic, subscription_id)
        logger.debug("Subscriber %s disconnected", subscription_id)

    def is_connected(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscribers

    def topics_for(self, subscription_id: str) -> frozenset[str]:
        with self._lock:
            subscriber = self._subscribers.get(subscription_id)
            return frozenset(subscriber.topics) if subscriber else frozenset()

    def subscriber_count(self, topic: str | None = None) -> int:
        with self._lock:
            if topic is None:
                return len(self._subscribers)
            return len(self._topics.get(topic, ()))

    def publish(self, topics: Iterable[str], event_name: str, payload: dict[str, Any]) -> int:
        """Deliver once per subscriber across the union of ``topics``.

        Returns the number of subscribers that received the message.
        """
        with self._lock:
            recipient_ids: list[str] = []
            seen: set[str] = set()
            for topic in topics:
                for subscription_id in self._topics.get(topic, ()):
                    if subscription_id not in seen:
                        seen.add(subscription_id)
                        recipient_ids.append(subscription_id)
            recipients = [self._subscribers[item] for item in recipient_ids]

        if not recipients:
            return 0

        message = BroadcastMessage(event=event_name, payload=payload)
        delivered = 0
        for subscriber in recipients:
            try:
                subscriber.callback(message)
            except Exception:  # noqa: BLE001
                logger.exception("Dropping subscriber %s after failed %s delivery", subscriber.id, event_name)
                self.disconnect(subscriber.id)
                continue
            delivered += 1
        return delivered

    def _join_locked(self, subscription_id: str, topic: str) -> None:
        self._subscribers[subscription_id].topics.add(topic)
        self._topics.setdefault(topic, set()).add(subscription_id)

    def _discard_member_locked(self, topic: str, subscription_id: str) -> None:
        members = self._topics.get(topic)
        if members is None:
            return
        members.discard(subscription_id)
        if not members:
            del self._topics[topic]
