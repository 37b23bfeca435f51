"""Summary: Tests for calendar sync, appointment writes, and provider parsing.

Importance: Ensures the local event mirror and its reminders follow provider changes.
Alternatives: Validate sync manually against a live calendar.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeGateway
from clinicbridge.app import AppContext, build_context
from clinicbridge.calendar import (
    EventChanges,
    EventDraft,
    GoogleCalendarProvider,
    MockCalendarProvider,
    parse_google_event,
)
from clinicbridge.config import AppConfig
from clinicbridge.errors import NotConnected, NotFound, ProviderError, Unauthorized
from clinicbridge.models import CalendarEventData, User, utcnow
from clinicbridge.oauth import OAuthTokenResult


@pytest.fixture
def provider() -> MockCalendarProvider:
    return MockCalendarProvider()


@pytest.fixture
def context(config: AppConfig, provider: MockCalendarProvider) -> AppContext:
    return build_context(config, gateway=FakeGateway(), calendar_provider=provider)


def _connect(context: AppContext, user_id: int) -> None:
    context.token_service().connect(
        user_id,
        OAuthTokenResult(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=utcnow() + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar",
            token_type="Bearer",
        ),
    )


def _event(event_id: str, start: datetime, status: str = "confirmed") -> CalendarEventData:
    return CalendarEventData(
        provider_event_id=event_id,
        title="Consulta",
        start_time=start,
        end_time=start + timedelta(minutes=30),
        status=status,
    )


def _start(days: int) -> datetime:
    return (utcnow() + timedelta(days=days)).replace(microsecond=0)


def test_sync_mirrors_window_and_schedules_reminders(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    """Summary: Verify sync stores events in the 30 day window and schedules reminders.

    Importance: The cron sync is what turns calendar entries into reminders.
    Alternatives: Schedule reminders only for events created in the app.
    """

    _connect(context, user_id)
    provider.add_event(_event("evt-soon", _start(3)))
    provider.add_event(_event("evt-far", _start(45)))
    calendar = context.services_for_user(user_id).calendar

    assert calendar.sync_events() == 1
    stored = context.store.get_calendar_event("evt-soon")
    assert stored.user_id == user_id
    assert stored.reminder_24h_job_ref is not None
    assert stored.reminder_2h_job_ref is not None
    assert context.store.get_calendar_event("evt-far") is None

    calendar.sync_events()
    pending = [job for job in context.store.list_reminder_jobs("evt-soon") if job.status == "pending"]
    assert len(pending) == 2
    assert context.store.get_calendar_event("evt-soon").reminder_24h_job_ref == stored.reminder_24h_job_ref


def test_moved_event_is_rescheduled_and_flags_reset(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    _connect(context, user_id)
    start = _start(3)
    provider.add_event(_event("evt-1", start))
    calendar = context.services_for_user(user_id).calendar
    calendar.sync_events()
    before = context.store.get_calendar_event("evt-1")
    context.store.mark_reminder_sent("evt-1", "24h")

    provider.add_event(_event("evt-1", start + timedelta(hours=3)))
    calendar.sync_events()
    after = context.store.get_calendar_event("evt-1")
    assert after.reminder_sent_24h is False
    assert after.reminder_24h_job_ref != before.reminder_24h_job_ref
    old_job = context.store.get_reminder_job(before.reminder_24h_job_ref)
    assert old_job.status == "cancelled"


def test_cancelled_event_cancels_reminders(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    _connect(context, user_id)
    provider.add_event(_event("evt-1", _start(3)))
    calendar = context.services_for_user(user_id).calendar
    calendar.sync_events()
    provider.cancel_event("evt-1")
    calendar.sync_events()
    stored = context.store.get_calendar_event("evt-1")
    assert stored.status == "cancelled"
    assert stored.reminder_24h_job_ref is None
    assert all(job.status == "cancelled" for job in context.store.list_reminder_jobs("evt-1"))


def test_create_event_keeps_patient_fields_locally(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    """Summary: Verify patient fields survive later syncs that do not carry them.

    Importance: Reminder delivery needs the patient phone stored with the event.
    Alternatives: Store patient details in the provider description.
    """

    _connect(context, user_id)
    calendar = context.services_for_user(user_id).calendar
    start = _start(2)
    created = calendar.create_event(
        EventDraft(
            title="Control",
            start_time=start,
            end_time=start,
            patient_name="María López",
            patient_phone="+1 (555) 222-3333",
        )
    )
    assert created.patient_phone == "+15552223333"
    assert created.end_time > created.start_time
    calendar.sync_events()
    assert context.store.get_calendar_event(created.provider_event_id).patient_name == "María López"


def test_update_and_delete_event(context: AppContext, provider: MockCalendarProvider, user_id: int) -> None:
    _connect(context, user_id)
    calendar = context.services_for_user(user_id).calendar
    created = calendar.create_event(
        EventDraft(title="Control", start_time=_start(2), end_time=_start(2) + timedelta(minutes=45))
    )
    updated = calendar.update_event(created.provider_event_id, EventChanges(title="Control anual"))
    assert updated.title == "Control anual"
    jobs = context.store.list_reminder_jobs(created.provider_event_id)
    calendar.delete_event(created.provider_event_id)
    assert context.store.get_calendar_event(created.provider_event_id) is None
    assert all(
        context.store.get_reminder_job(job.job_ref).status == "cancelled" for job in jobs
    )
    assert provider.list_events("token", utcnow(), utcnow() + timedelta(days=30)) == []


def test_other_users_event_is_unauthorized(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    _connect(context, user_id)
    created = context.services_for_user(user_id).calendar.create_event(
        EventDraft(title="Control", start_time=_start(2), end_time=_start(2))
    )
    other_id = context.store.ensure_user(User(display_name="Dr. Luis Vega", email="luis@clinic.test"))
    _connect(context, other_id)
    with pytest.raises(Unauthorized):
        context.services_for_user(other_id).calendar.delete_event(created.provider_event_id)
    assert context.store.get_calendar_event(created.provider_event_id) is not None


def test_sync_without_connection_raises(context: AppContext, user_id: int) -> None:
    with pytest.raises(NotConnected):
        context.services_for_user(user_id).calendar.sync_events()


def test_sync_all_calendars_covers_connected_users(
    context: AppContext, provider: MockCalendarProvider, user_id: int
) -> None:
    other_id = context.store.ensure_user(User(display_name="Dr. Luis Vega", email="luis@clinic.test"))
    _connect(context, user_id)
    provider.add_event(_event("evt-1", _start(1)))
    assert context.sync_all_calendars() == {user_id: 1}
    assert other_id not in context.sync_all_calendars()


class FlakyCalendarProvider(MockCalendarProvider):
    """Fails the first listing with an I/O error."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def list_events(self, access_token, time_min, time_max):
        self.calls += 1
        if self.calls == 1:
            raise OSError("disk I/O error")
        return super().list_events(access_token, time_min, time_max)


def test_sync_all_calendars_continues_after_unexpected_error(config: AppConfig, user_id: int) -> None:
    provider = FlakyCalendarProvider()
    context = build_context(config, gateway=FakeGateway(), calendar_provider=provider)
    other_id = context.store.ensure_user(User(display_name="Dr. Luis Vega", email="luis@clinic.test"))
    _connect(context, user_id)
    _connect(context, other_id)
    provider.add_event(_event("evt-1", _start(1)))
    results = context.sync_all_calendars()
    assert provider.calls == 2
    assert list(results.values()) == [1]


def test_google_delete_treats_gone_as_success(monkeypatch: pytest.MonkeyPatch) -> None:
    def gone(self, method, url, access_token, body=None):
        raise ProviderError("Calendar API returned HTTP 410", provider_status=410)

    monkeypatch.setattr(GoogleCalendarProvider, "_request", gone)
    GoogleCalendarProvider("https://calendar.test/v3").delete_event("token", "evt-1")


def test_google_delete_propagates_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def forbidden(self, method, url, access_token, body=None):
        raise ProviderError("Calendar API returned HTTP 403", provider_status=403)

    monkeypatch.setattr(GoogleCalendarProvider, "_request", forbidden)
    with pytest.raises(ProviderError):
        GoogleCalendarProvider("https://calendar.test/v3").delete_event("token", "evt-1")


def test_google_list_events_builds_query(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[str] = []

    def fake_request(self, method, url, access_token, body=None):
        captured.append(url)
        return {
            "items": [
                {
                    "id": "g1",
                    "summary": "Consulta",
                    "start": {"dateTime": "2026-03-05T15:30:00Z"},
                    "end": {"dateTime": "2026-03-05T16:00:00Z"},
                },
                {"summary": "no id"},
            ]
        }

    monkeypatch.setattr(GoogleCalendarProvider, "_request", fake_request)
    start = datetime(2026, 3, 2, tzinfo=timezone.utc)
    events = GoogleCalendarProvider("https://calendar.test/v3").list_events(
        "token", start, start + timedelta(days=30)
    )
    assert [event.provider_event_id for event in events] == ["g1"]
    assert "singleEvents=true" in captured[0]
    assert "orderBy=startTime" in captured[0]
    assert "maxResults=250" in captured[0]
    assert captured[0].startswith("https://calendar.test/v3/calendars/primary/events?")


def test_google_empty_time_range_returns_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    def empty(self, method, url, access_token, body=None):
        raise ProviderError("Calendar API returned HTTP 400", provider_status=400, detail='{"reason": "timeRangeEmpty"}')

    monkeypatch.setattr(GoogleCalendarProvider, "_request", empty)
    start = datetime(2026, 3, 2, tzinfo=timezone.utc)
    assert GoogleCalendarProvider("https://calendar.test/v3").list_events("token", start, start) == []


def test_parse_google_event_defaults() -> None:
    event = parse_google_event({"id": "g2", "start": {"date": "2026-03-05"}, "end": {"date": "2026-03-06"}})
    assert event.title == "No Title"
    assert event.status == "confirmed"
    assert event.start_time == datetime(2026, 3, 5, tzinfo=timezone.utc)
    with pytest.raises(ProviderError):
        parse_google_event({"id": "g3"})


def test_mock_provider_update_unknown_event() -> None:
    with pytest.raises(NotFound):
        MockCalendarProvider().update_event("token", "missing", EventChanges(title="x"))


def test_event_draft_default_length() -> None:
    start = datetime(2026, 3, 5, 15, 0, tzinfo=timezone.utc)
    draft = EventDraft(title="Control", start_time=start, end_time=start - timedelta(minutes=5))
    assert draft.normalized_end() == start + timedelta(minutes=30)
    longer = replace(draft, end_time=start + timedelta(hours=1))
    assert longer.normalized_end() == start + timedelta(hours=1)
