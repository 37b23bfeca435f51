"""Summary: Appointment reminder scheduling and dispatch.

Importance: Schedules 24h and 2h reminders per calendar event, keeps them in step with
reschedules and cancellations, and fires them from a durable job table.
Alternatives: Rely on an external task queue with delayed jobs.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from clinicbridge.models import REMINDER_HORIZONS, from_iso, to_iso, utcnow
from clinicbridge.storage.sqlite_store import SqliteStore, StoredCalendarEvent, StoredReminderJob


logger = logging.getLogger(__name__)

HORIZON_OFFSETS = {
    "24h": timedelta(hours=24),
    "2h": timedelta(hours=2),
}
REMINDER_TEMPLATE_NAME = "recordatorio_cita"
CLAIM_LEASE = timedelta(minutes=10)


class ReminderJobQueue:
    """Summary: Durable one-shot timers stored in SQLite.

    Importance: Jobs survive restarts; every status move is a compare-and-set so a
    cancel racing a claim has exactly one winner.
    Alternatives: In-process timers that are lost on restart.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def enqueue(
        self, event_id: str, horizon: str, title: str, fire_at: datetime, now: datetime | None = None
    ) -> str:
        job_ref = uuid.uuid4().hex
        self._store.insert_reminder_job(
            job_ref=job_ref,
            event_id=event_id,
            horizon=horizon,
            title=title,
            fire_at=to_iso(fire_at),
            created_at=to_iso(now or utcnow()),
        )
        return job_ref

    def cancel(self, job_ref: str) -> bool:
        """Cancel a pending job; returns False when it already ran or was cancelled."""

        return self._store.transition_reminder_job(
            job_ref, "pending", "cancelled", finished_at=to_iso(utcnow())
        )

    def claim(self, job_ref: str, now: datetime | None = None) -> bool:
        return self._store.transition_reminder_job(
            job_ref, "pending", "running", claimed_at=to_iso(now or utcnow())
        )

    def requeue_stale(self, now: datetime, lease: timedelta = CLAIM_LEASE) -> int:
        """Put jobs claimed longer than the lease ago back to pending."""

        return self._store.requeue_stale_reminder_jobs(to_iso(now - lease))

    def due(self, now: datetime, limit: int = 50) -> list[StoredReminderJob]:
        return self._store.list_due_reminder_jobs(to_iso(now), limit)

    def finish(self, job_ref: str, status: str, error: str | None = None) -> bool:
        return self._store.transition_reminder_job(
            job_ref, "running", status, finished_at=to_iso(utcnow()), error=error
        )

    def get(self, job_ref: str) -> StoredReminderJob | None:
        return self._store.get_reminder_job(job_ref)

    def jobs_for_event(self, event_id: str) -> list[StoredReminderJob]:
        return self._store.list_reminder_jobs(event_id)


class TemplateSender(Protocol):
    """Outbound path able to send a template message on a user's behalf."""

    def send_template(
        self, owner_id: int, phone_number: str, template_sid: str, variables: dict[str, str]
    ) -> object:
        ...


class ReminderNotifier(ABC):
    """Summary: Delivers a fired reminder to the patient.

    Importance: Keeps the scheduler independent of the delivery channel.
    Alternatives: Hardcode WhatsApp delivery in the dispatcher.
    """

    @abstractmethod
    def notify(self, event: StoredCalendarEvent, horizon: str) -> None:
        """Deliver the reminder; raising marks the job failed."""


class LoggingReminderNotifier(ReminderNotifier):
    """Only logs fired reminders."""

    def notify(self, event: StoredCalendarEvent, horizon: str) -> None:
        logger.info(
            "Reminder %s fired for event %s starting %s.",
            horizon,
            event.provider_event_id,
            event.start_time,
        )


class WhatsAppReminderNotifier(ReminderNotifier):
    """Summary: Sends the appointment reminder template over WhatsApp.

    Importance: Uses the same outbound path as interactive sends, so the reminder
    shows up in the patient's conversation.
    Alternatives: Send through a separate notification service.
    """

    def __init__(self, store: SqliteStore, sender: TemplateSender, template_sid: str | None) -> None:
        self._store = store
        self._sender = sender
        self._template_sid = template_sid

    def notify(self, event: StoredCalendarEvent, horizon: str) -> None:
        if not event.patient_phone:
            logger.info("Event %s has no patient phone; skipping reminder.", event.provider_event_id)
            return
        if not self._template_sid:
            logger.warning(
                "No %s template configured; skipping reminder for event %s.",
                REMINDER_TEMPLATE_NAME,
                event.provider_event_id,
            )
            return
        doctor = self._store.get_user(event.user_id)
        variables = {
            "1": event.patient_name or "Patient",
            "2": doctor.display_name if doctor else "Doctor",
            "3": format_appointment_date(event.start_time),
        }
        self._sender.send_template(
            owner_id=event.user_id,
            phone_number=event.patient_phone,
            template_sid=self._template_sid,
            variables=variables,
        )
        logger.info("Sent %s reminder for event %s.", horizon, event.provider_event_id)


def format_appointment_date(start_time: str) -> str:
    """Format a stored start time for the reminder template, e.g. 'Monday 03 March, 14:30'."""

    parsed = from_iso(start_time)
    if parsed is None:
        return start_time
    return parsed.strftime("%A %d %B, %H:%M")


@dataclass(frozen=True)
class DispatchReport:
    """Counts from one dispatch pass."""

    fired: int = 0
    failed: int = 0
    skipped: int = 0


class ReminderScheduler:
    """Summary: Schedules, reschedules, cancels, and fires event reminders.

    Importance: Stale jobs are cancelled before new ones are enqueued, so a moved
    appointment never triggers a reminder for its old time.
    Alternatives: Recompute due reminders from events on every poll.
    """

    def __init__(
        self,
        store: SqliteStore,
        queue: ReminderJobQueue,
        notifier: ReminderNotifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._notifier = notifier
        self._clock = clock

    def schedule_reminders(self, event_id: str, start_time: datetime, title: str) -> dict[str, str | None]:
        """Summary: Replace an event's reminder jobs with fresh ones for its start time.

        Importance: Horizons already in the past are skipped.
        Alternatives: Patch existing jobs' fire times in place.
        """

        event = self._store.get_calendar_event(event_id)
        if event is None:
            logger.warning("Cannot schedule reminders for unknown event %s.", event_id)
            return {horizon: None for horizon in REMINDER_HORIZONS}
        self._cancel_pending(event_id)
        now = self._clock()
        refs: dict[str, str | None] = {}
        for horizon in REMINDER_HORIZONS:
            fire_at = start_time - HORIZON_OFFSETS[horizon]
            if fire_at > now:
                refs[horizon] = self._queue.enqueue(event_id, horizon, title, fire_at, now)
                logger.info("Scheduled %s reminder for event %s at %s.", horizon, event_id, to_iso(fire_at))
            else:
                refs[horizon] = None
        self._store.set_reminder_job_refs(event_id, refs["24h"], refs["2h"])
        return refs

    def cancel_reminders(self, event_id: str) -> None:
        self._cancel_pending(event_id)
        self._store.set_reminder_job_refs(event_id, None, None)

    def on_reminder_fired(self, event_id: str, horizon: str) -> None:
        """Record that a horizon's reminder went out; repeating it changes nothing."""

        self._store.mark_reminder_sent(event_id, horizon)

    def dispatch_due(self, now: datetime | None = None) -> DispatchReport:
        """Summary: Claim and run every due job once.

        Importance: Failures are logged and recorded on the job, never retried and
        never raised out of the polling loop. A job left running by a dispatcher that
        stopped mid-run is requeued once its claim is older than CLAIM_LEASE.
        Alternatives: Let failures propagate and retry on the next poll.
        """

        now = now or self._clock()
        requeued = self._queue.requeue_stale(now)
        if requeued:
            logger.warning("Requeued %s reminder jobs whose claim expired.", requeued)
        fired = failed = skipped = 0
        for job in self._queue.due(now):
            if not self._queue.claim(job.job_ref, now):
                continue
            event = self._store.get_calendar_event(job.event_id)
            if event is None or event.status == "cancelled" or not _is_current_job(event, job):
                self._queue.finish(job.job_ref, "cancelled")
                skipped += 1
                continue
            if _already_sent(event, job.horizon):
                self._queue.finish(job.job_ref, "fired")
                skipped += 1
                continue
            try:
                self._notifier.notify(event, job.horizon)
                self.on_reminder_fired(job.event_id, job.horizon)
            except Exception as exc:
                logger.exception("Reminder job %s for event %s failed.", job.job_ref, job.event_id)
                self._queue.finish(job.job_ref, "failed", error=str(exc) or exc.__class__.__name__)
                failed += 1
                continue
            self._queue.finish(job.job_ref, "fired")
            fired += 1
        if fired or failed:
            logger.info("Reminder dispatch: %s fired, %s failed, %s skipped.", fired, failed, skipped)
        return DispatchReport(fired=fired, failed=failed, skipped=skipped)

    def _cancel_pending(self, event_id: str) -> None:
        for job in self._queue.jobs_for_event(event_id):
            if job.status == "pending" and self._queue.cancel(job.job_ref):
                logger.info("Cancelled %s reminder job for event %s.", job.horizon, event_id)


def _is_current_job(event: StoredCalendarEvent, job: StoredReminderJob) -> bool:
    if job.horizon == "24h":
        return event.reminder_24h_job_ref == job.job_ref
    return event.reminder_2h_job_ref == job.job_ref


def _already_sent(event: StoredCalendarEvent, horizon: str) -> bool:
    if horizon == "24h":
        return event.reminder_sent_24h
    return event.reminder_sent_2h


class ReminderDispatcher:
    """Summary: Background scheduler driving reminder dispatch and calendar sync.

    Importance: Polls the durable job table on an interval and runs the periodic
    calendar sync for every connected user.
    Alternatives: Run both from an external cron.
    """

    def __init__(
        self,
        scheduler: ReminderScheduler,
        poll_seconds: int,
        calendar_sync: Callable[[], object] | None = None,
        sync_minutes: int = 30,
    ) -> None:
        self._reminders = scheduler
        self._poll_seconds = poll_seconds
        self._calendar_sync = calendar_sync
        self._sync_minutes = sync_minutes
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            logger.warning("Reminder dispatcher already running.")
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._dispatch,
            IntervalTrigger(seconds=self._poll_seconds),
            id="dispatch_reminders",
            name="Dispatch due appointment reminders",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self._calendar_sync is not None:
            scheduler.add_job(
                self._sync_calendars,
                IntervalTrigger(minutes=self._sync_minutes),
                id="calendar_sync",
                name="Sync connected calendars",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Reminder dispatcher started (poll=%ss, calendar sync=%smin).",
            self._poll_seconds,
            self._sync_minutes,
        )

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Reminder dispatcher stopped.")
        self._scheduler = None

    def _dispatch(self) -> None:
        self._reminders.dispatch_due()

    def _sync_calendars(self) -> None:
        try:
            self._calendar_sync()
        except Exception:
            logger.exception("Scheduled calendar sync failed.")


def template_variables_json(variables: dict[str, str]) -> str:
    """Serialize template variables the way the gateway expects them."""

    return json.dumps(variables, ensure_ascii=False)
