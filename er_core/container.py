from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from er_core.application.services.alert_evaluator import AlertEvaluator
from er_core.application.services.alert_feed_service import AlertFeedService
from er_core.application.services.alert_service import AlertService
from er_core.application.services.encounter_service import EncounterService
from er_core.application.services.event_dispatcher import EventDispatcher
from er_core.application.services.event_outbox import EventOutbox
from er_core.application.services.location_cache import LocationCache
from er_core.application.services.messaging_service import MessagingService
from er_core.application.services.triage_service import TriageService
from er_core.config import Settings, settings
from er_core.infrastructure.db.repositories.alert_repo import AlertRepository
from er_core.infrastructure.db.repositories.encounter_repo import EncounterRepository
from er_core.infrastructure.db.repositories.event_repo import EncounterEventRepository
from er_core.infrastructure.db.repositories.hospital_repo import HospitalRepository
from er_core.infrastructure.db.repositories.message_repo import MessageRepository
from er_core.infrastructure.db.repositories.triage_repo import TriageRepository
from er_core.infrastructure.db.session import session_scope
from er_core.infrastructure.jobs.recurring import RecurringJob
from er_core.infrastructure.realtime.broadcast_hub import BroadcastHub

logger = logging.getLogger(__name__)


@dataclass
class Container:
    hospital_repo: HospitalRepository
    encounter_repo: EncounterRepository
    event_repo: EncounterEventRepository
    alert_repo: AlertRepository
    message_repo: MessageRepository
    triage_repo: TriageRepository

    hub: BroadcastHub
    dispatcher: EventDispatcher
    location_cache: LocationCache
    outbox: EventOutbox

    alert_service: AlertService
    alert_evaluator: AlertEvaluator
    alert_feed_service: AlertFeedService
    encounter_service: EncounterService
    triage_service: TriageService
    messaging_service: MessagingService

    jobs: list[RecurringJob] = field(default_factory=list)

    def start_background(self) -> None:
        self.dispatcher.start()
        for job in self.jobs:
            job.start()

    def stop_background(self) -> None:
        for job in self.jobs:
            job.stop()
        self.dispatcher.stop(wait=True)


def build_container(
    session_factory: Callable = session_scope,
    app_settings: Settings = settings,
) -> Container:
    hospital_repo = HospitalRepository()
    encounter_repo = EncounterRepository()
    event_repo = EncounterEventRepository()
    alert_repo = AlertRepository()
    message_repo = MessageRepository()
    triage_repo = TriageRepository()

    hub = BroadcastHub()
    dispatcher = EventDispatcher(
        hub,
        event_repo=event_repo,
        session_factory=session_factory,
        workers=app_settings.dispatch_workers,
        max_attempts=app_settings.dispatch_max_attempts,
        backoff_seconds=app_settings.dispatch_backoff_seconds,
        attempt_timeout_seconds=app_settings.dispatch_attempt_timeout_seconds,
        sweep_grace_seconds=app_settings.event_sweep_grace_seconds,
        sweep_batch_size=app_settings.event_sweep_batch_size,
    )
    location_cache = LocationCache(
        ttl_seconds=app_settings.location_ttl_seconds,
        max_entries=app_settings.location_cache_max_entries,
    )
    outbox = EventOutbox(event_repo=event_repo, encounter_repo=encounter_repo, session_factory=session_factory)

    alert_service = AlertService(
        alert_repo=alert_repo,
        encounter_repo=encounter_repo,
        outbox=outbox,
        dispatcher=dispatcher,
        session_factory=session_factory,
    )
    alert_evaluator = AlertEvaluator(
        alert_service=alert_service,
        encounter_repo=encounter_repo,
        dispatcher=dispatcher,
        session_factory=session_factory,
        reassessment_overdue_minutes=app_settings.reassessment_overdue_minutes,
        batch_size=app_settings.alert_evaluation_batch_size,
    )
    alert_feed_service = AlertFeedService(
        alert_repo=alert_repo,
        encounter_repo=encounter_repo,
        session_factory=session_factory,
    )
    encounter_service = EncounterService(
        encounter_repo=encounter_repo,
        hospital_repo=hospital_repo,
        triage_repo=triage_repo,
        message_repo=message_repo,
        alert_repo=alert_repo,
        outbox=outbox,
        evaluator=alert_evaluator,
        dispatcher=dispatcher,
        location_cache=location_cache,
        session_factory=session_factory,
    )
    triage_service = TriageService(
        triage_repo=triage_repo,
        encounter_repo=encounter_repo,
        outbox=outbox,
        evaluator=alert_evaluator,
        dispatcher=dispatcher,
        session_factory=session_factory,
    )
    messaging_service = MessagingService(
        message_repo=message_repo,
        encounter_repo=encounter_repo,
        outbox=outbox,
        alert_service=alert_service,
        dispatcher=dispatcher,
        session_factory=session_factory,
    )

    jobs: list[RecurringJob] = []
    if app_settings.background_jobs_enabled:
        jobs = [
            RecurringJob("event-sweep", dispatcher.sweep_once, app_settings.event_sweep_interval_seconds),
            RecurringJob("alert-evaluation", alert_evaluator.run_once, app_settings.alert_evaluation_interval_seconds),
            RecurringJob("location-prune", location_cache.prune, app_settings.location_prune_interval_seconds),
        ]
    else:
        logger.info("Background jobs disabled; events are dispatched only on enqueue")

    return Container(
        hospital_repo=hospital_repo,
        encounter_repo=encounter_repo,
        event_repo=event_repo,
        alert_repo=alert_repo,
        message_repo=message_repo,
        triage_repo=triage_repo,
        hub=hub,
        dispatcher=dispatcher,
        location_cache=location_cache,
        outbox=outbox,
        alert_service=alert_service,
        alert_evaluator=alert_evaluator,
        alert_feed_service=alert_feed_service,
        encounter_service=encounter_service,
        triage_service=triage_service,
        messaging_service=messaging_service,
        jobs=jobs,
    )
