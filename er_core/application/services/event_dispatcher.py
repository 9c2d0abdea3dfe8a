"""Relay of committed outbox events to the broadcast layer.

Services call :meth:`EventDispatcher.enqueue` after their transaction has
committed. A periodic :meth:`EventDispatcher.sweep_once` re-enqueues events
that are still unprocessed after a grace period (crashed process, exhausted
retries, push channel down). Delivery is at least once: a subscriber may see
the same ``eventId`` twice.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, cast

from sqlalchemy.exc import SQLAlchemyError

from er_core.application.errors import TransientError
from er_core.domain.constants import EventType
from er_core.infrastructure.db.json_columns import from_json
from er_core.infrastructure.db.models_sqlalchemy import utc_now
from er_core.infrastructure.db.repositories.event_repo import EncounterEventRepository
from er_core.infrastructure.db.session import session_scope
from er_core.infrastructure.realtime.broadcast_hub import (
    Broadcaster,
    RealtimeEvent,
    encounter_topic,
    hospital_topic,
)

logger = logging.getLogger(__name__)

REALTIME_EVENT_BY_TYPE: dict[str, RealtimeEvent] = {
    EventType.ENCOUNTER_CREATED: RealtimeEvent.ENCOUNTER_UPDATED,
    EventType.STATUS_CHANGE: RealtimeEvent.ENCOUNTER_UPDATED,
    EventType.TRIAGE_CREATED: RealtimeEvent.ENCOUNTER_UPDATED,
    EventType.TRIAGE_COMPLETED: RealtimeEvent.ENCOUNTER_UPDATED,
    EventType.MESSAGE_CREATED: RealtimeEvent.MESSAGE_CREATED,
    EventType.MESSAGE_READ: RealtimeEvent.MESSAGE_READ,
    EventType.ALERT_CREATED: RealtimeEvent.ALERT_CREATED,
    EventType.ALERT_ACKNOWLEDGED: RealtimeEvent.ALERT_ACKNOWLEDGED,
    EventType.ALERT_RESOLVED: RealtimeEvent.ALERT_RESOLVED,
    EventType.ALERT_ESCALATED: RealtimeEvent.ALERT_ESCALATED,
}


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Delay before retrying after failed ``attempt`` (1-based)."""
    return base_seconds * (2 ** (attempt - 1))


def enqueue_committed(dispatcher: EventDispatcher | None, event_ids: Iterable[int | None]) -> None:
    """Hand committed event ids to the dispatcher; without one the sweep delivers them."""
    if dispatcher is None:
        return
    for event_id in event_ids:
        if event_id is not None:
            dispatcher.enqueue(event_id)


class EventDispatcher:
    def __init__(
        self,
        broadcaster: Broadcaster,
        event_repo: EncounterEventRepository | None = None,
        session_factory: Callable = session_scope,
        *,
        workers: int = 4,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        attempt_timeout_seconds: float | None = 10.0,
        sweep_grace_seconds: float = 10.0,
        sweep_batch_size: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.broadcaster = broadcaster
        self.event_repo = event_repo or EncounterEventRepository()
        self.session_factory = session_factory
        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.sweep_grace_seconds = sweep_grace_seconds
        self.sweep_batch_size = sweep_batch_size
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()
        self._stop_event = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._attempt_executor: ThreadPoolExecutor | None = None

    @property
    def is_running(self) -> bool:
        return self._executor is not None

    def in_flight(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._in_flight)

    def start(self) -> None:
        with self._lock:
            if self._executor is not None:
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="er-dispatch")
            if self.attempt_timeout_seconds:
                self._attempt_executor = ThreadPoolExecutor(
                    max_workers=self.workers,
                    thread_name_prefix="er-dispatch-attempt",
                )
        logger.info("Event dispatcher started with %s workers", self.workers)

    def stop(self, wait: bool = True) -> None:
        self._stop_event.set()
        with self._lock:
            executor, self._executor = self._executor, None
            attempt_executor, self._attempt_executor = self._attempt_executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
        if attempt_executor is not None:
            attempt_executor.shutdown(wait=wait, cancel_futures=True)
        with self._lock:
            self._in_flight.clear()
        logger.info("Event dispatcher stopped")

    def enqueue(self, event_id: int) -> bool:
        """Schedule delivery of a committed event.

        Returns False when the event is already queued or running here, or
        when the dispatcher is stopped (the sweep picks such events up later).
        """
        with self._lock:
            executor = self._executor
            if executor is None:
                logger.debug("Dispatcher not running; event %s left for the sweep", event_id)
                return False
            if event_id in self._in_flight:
                return False
            self._in_flight.add(event_id)
        try:
            executor.submit(self._run, event_id)
        except RuntimeError:
            # executor shut down between the check and the submit
            self._release(event_id)
            return False
        return True

    def enqueue_many(self, event_ids: Iterable[int]) -> int:
        return sum(1 for event_id in event_ids if self.enqueue(event_id))

    def sweep_once(self, now: datetime | None = None) -> int:
        """Re-enqueue unprocessed events older than the grace period."""
        current = now or self._clock()
        cutoff = current - timedelta(seconds=self.sweep_grace_seconds)
        with self.session_factory() as session:
            event_ids = self.event_repo.list_pending_ids(
                session,
                created_before=cutoff,
                limit=self.sweep_batch_size,
            )
        if not event_ids:
            return 0
        enqueued = self.enqueue_many(event_ids)
        logger.info("Event sweep found %s pending events, enqueued %s", len(event_ids), enqueued)
        return enqueued

    def dispatch_now(self, event_id: int) -> bool:
        """Run the full retry cycle for one event on the calling thread."""
        with self._lock:
            if event_id in self._in_flight:
                return False
            self._in_flight.add(event_id)
        return self._run(event_id)

    def _release(self, event_id: int) -> None:
        with self._lock:
            self._in_flight.discard(event_id)

    def _run(self, event_id: int) -> bool:
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    self._attempt_with_timeout(event_id)
                    return True
                except TransientError as exc:
                    if attempt >= self.max_attempts:
                        logger.error(
                            "Event %s dispatch failed after %s attempts: %s; left for the sweep",
                            event_id,
                            attempt,
                            exc,
                        )
                        return False
                    delay = backoff_delay(attempt, self.backoff_seconds)
                    logger.warning(
                        "Event %s dispatch attempt %s failed: %s; retrying in %.1fs",
                        event_id,
                        attempt,
                        exc,
                        delay,
                    )
                    if self._stop_event.wait(delay):
                        logger.info("Dispatcher stopping; event %s left for the sweep", event_id)
                        return False
            return False
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error dispatching event %s", event_id)
            return False
        finally:
            self._release(event_id)

    def _attempt_with_timeout(self, event_id: int) -> None:
        with self._lock:
            attempt_executor = self._attempt_executor
        if attempt_executor is None or not self.attempt_timeout_seconds:
            self._attempt(event_id)
            return
        future: Future[None] = attempt_executor.submit(self._attempt, event_id)
        try:
            future.result(timeout=self.attempt_timeout_seconds)
        except FutureTimeoutError as exc:
            raise TransientError(
                f"dispatch attempt timed out after {self.attempt_timeout_seconds}s"
            ) from exc

    def _attempt(self, event_id: int) -> None:
        try:
            with self.session_factory() as session:
                event = self.event_repo.get(session, event_id)
                if event is None:
                    logger.warning("Event %s not found; nothing to dispatch", event_id)
                    return
                if event.processed_at is not None:
                    return
                event_type = cast(str, event.type)
                encounter_id = cast(int, event.encounter_id)
                hospital_id = cast(int, event.hospital_id)
                created_at = cast(datetime, event.created_at)
                metadata = from_json(event.metadata_json, default={}) or {}
        except SQLAlchemyError as exc:
            raise TransientError(f"failed to load event {event_id}: {exc}") from exc

        event_name = REALTIME_EVENT_BY_TYPE.get(event_type)
        if event_name is None:
            logger.warning("Event %s has unmapped type %s; marking processed", event_id, event_type)
        else:
            payload: dict[str, Any] = {
                "eventId": event_id,
                "encounterId": encounter_id,
                "hospitalId": hospital_id,
                "createdAt": created_at.isoformat(),
                "metadata": metadata,
            }
            try:
                delivered = self.broadcaster.publish(
                    [hospital_topic(hospital_id), encounter_topic(encounter_id)],
                    event_name.value,
                    payload,
                )
            except Exception as exc:  # noqa: BLE001
                raise TransientError(f"broadcast of event {event_id} failed: {exc}") from exc
            logger.debug("Event %s (%s) delivered to %s subscribers", event_id, event_name, delivered)

        try:
            with self.session_factory() as session:
                self.event_repo.mark_processed(session, event_id, self._clock())
        except SQLAlchemyError as exc:
            raise TransientError(f"failed to mark event {event_id} processed: {exc}") from exc
