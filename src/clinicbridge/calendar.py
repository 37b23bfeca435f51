"""Summary: Calendar provider interfaces and implementations.

Importance: Encapsulates calendar reads and writes behind one interface for sync and reminders.
Alternatives: Use provider SDKs directly without a shared abstraction.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
import urllib.error
import urllib.parse
import urllib.request

from clinicbridge.errors import NotFound, ProviderError
from clinicbridge.models import CalendarEventData, from_iso, to_iso


logger = logging.getLogger(__name__)

SYNC_WINDOW_DAYS = 30
MAX_SYNC_RESULTS = 250
DEFAULT_EVENT_MINUTES = 30


@dataclass(frozen=True)
class EventDraft:
    """Summary: Input for creating a calendar event.

    Importance: Carries the patient fields that only exist locally, not at the provider.
    Alternatives: Pass provider JSON straight through.
    """

    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    attendees: tuple[str, ...] = field(default_factory=tuple)
    patient_ref: str | None = None
    patient_name: str | None = None
    patient_phone: str | None = None

    def normalized_end(self) -> datetime:
        """End time, defaulting to start + 30 minutes when not after start."""

        if self.end_time <= self.start_time:
            return self.start_time + timedelta(minutes=DEFAULT_EVENT_MINUTES)
        return self.end_time


@dataclass(frozen=True)
class EventChanges:
    """Partial update for an existing event; None means unchanged."""

    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    attendees: tuple[str, ...] | None = None


class CalendarProvider(ABC):
    """Summary: Abstract interface for calendar access.

    Importance: Standardizes retrieval and writes across mocked and real providers.
    Alternatives: Couple sync to a single calendar API.
    """

    @abstractmethod
    def list_events(
        self, access_token: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEventData]:
        """Summary: Fetch events in a time window from the provider.

        Importance: Drives calendar sync and reminder scheduling.
        Alternatives: Fetch events by a fixed count instead of a window.
        """

    @abstractmethod
    def create_event(self, access_token: str, draft: EventDraft) -> CalendarEventData:
        """Create an event and return the provider's normalized copy."""

    @abstractmethod
    def update_event(
        self, access_token: str, provider_event_id: str, changes: EventChanges
    ) -> CalendarEventData:
        """Patch an event and return the provider's normalized copy."""

    @abstractmethod
    def delete_event(self, access_token: str, provider_event_id: str) -> None:
        """Delete an event; an already-deleted event is not an error."""


class GoogleCalendarProvider(CalendarProvider):
    """Summary: Google Calendar v3 client for the primary calendar.

    Importance: Real provider used by sync, appointment creation, and the cron job.
    Alternatives: Use google-api-python-client.
    """

    def __init__(self, base_url: str, calendar_id: str = "primary") -> None:
        self._base_url = base_url.rstrip("/")
        self._calendar_id = calendar_id

    def list_events(
        self, access_token: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEventData]:
        """Summary: List single (expanded) events ordered by start time.

        Importance: Recurring series are expanded so each occurrence gets reminders.
        Alternatives: Sync series and expand locally.
        """

        params = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": _rfc3339(time_min),
            "timeMax": _rfc3339(time_max),
            "maxResults": str(MAX_SYNC_RESULTS),
        }
        try:
            payload = self._request("GET", self._events_url() + "?" + urllib.parse.urlencode(params), access_token)
        except ProviderError as exc:
            if "timeRangeEmpty" in exc.detail:
                return []
            raise
        items = payload.get("items", []) if payload else []
        return [parse_google_event(item) for item in items if item.get("id")]

    def create_event(self, access_token: str, draft: EventDraft) -> CalendarEventData:
        body: dict[str, Any] = {
            "summary": draft.title,
            "start": {"dateTime": _rfc3339(draft.start_time)},
            "end": {"dateTime": _rfc3339(draft.normalized_end())},
        }
        if draft.description is not None:
            body["description"] = draft.description
        if draft.attendees:
            body["attendees"] = [{"email": email} for email in draft.attendees]
        payload = self._request("POST", self._events_url(), access_token, body)
        event = parse_google_event(payload)
        return replace(
            event,
            title=event.title or draft.title,
            patient_ref=draft.patient_ref,
            patient_name=draft.patient_name,
            patient_phone=draft.patient_phone,
        )

    def update_event(
        self, access_token: str, provider_event_id: str, changes: EventChanges
    ) -> CalendarEventData:
        body: dict[str, Any] = {}
        if changes.title is not None:
            body["summary"] = changes.title
        if changes.description is not None:
            body["description"] = changes.description
        if changes.start_time is not None:
            body["start"] = {"dateTime": _rfc3339(changes.start_time)}
        if changes.end_time is not None:
            body["end"] = {"dateTime": _rfc3339(changes.end_time)}
        if changes.attendees is not None:
            body["attendees"] = [{"email": email} for email in changes.attendees]
        url = f"{self._events_url()}/{urllib.parse.quote(provider_event_id, safe='')}"
        payload = self._request("PATCH", url, access_token, body)
        return parse_google_event(payload)

    def delete_event(self, access_token: str, provider_event_id: str) -> None:
        url = f"{self._events_url()}/{urllib.parse.quote(provider_event_id, safe='')}"
        try:
            self._request("DELETE", url, access_token)
        except ProviderError as exc:
            if exc.provider_status == 410:
                logger.info("Event %s was already deleted at the provider.", provider_event_id)
                return
            raise

    def _events_url(self) -> str:
        calendar = urllib.parse.quote(self._calendar_id, safe="")
        return f"{self._base_url}/calendars/{calendar}/events"

    def _request(
        self, method: str, url: str, access_token: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Summary: Send an authenticated JSON request.

        Importance: Maps non-2xx responses and network failures to ProviderError.
        Alternatives: Use requests with a session.
        """

        headers = {"Authorization": f"Bearer {access_token}"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=10) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            raise ProviderError(
                f"Calendar API returned HTTP {exc.code}", provider_status=exc.code, detail=error_body
            ) from exc
        except urllib.error.URLError as exc:
            raise ProviderError(f"Calendar API unreachable: {exc.reason}") from exc
        if not raw:
            return {}
        return json.loads(raw)


class MockCalendarProvider(CalendarProvider):
    """Summary: In-memory calendar seeded from a local JSON fixture.

    Importance: Supports offline demos and tests, including writes.
    Alternatives: Generate synthetic events in code.
    """

    def __init__(self, fixture_path: Path | None = None) -> None:
        """Summary: Initialize the mock calendar provider.

        Importance: Allows configurable sample data for testing.
        Alternatives: Embed sample data directly in the class.
        """

        self._events: dict[str, CalendarEventData] = {}
        self._counter = 0
        if fixture_path is not None and fixture_path.exists():
            data = json.loads(fixture_path.read_text(encoding="utf-8"))
            for item in data:
                event = parse_google_event(item)
                self._events[event.provider_event_id] = event

    def list_events(
        self, access_token: str, time_min: datetime, time_max: datetime
    ) -> list[CalendarEventData]:
        events = [
            event
            for event in self._events.values()
            if time_min <= event.start_time < time_max
        ]
        return sorted(events, key=lambda event: event.start_time)[:MAX_SYNC_RESULTS]

    def create_event(self, access_token: str, draft: EventDraft) -> CalendarEventData:
        self._counter += 1
        event_id = f"mock-{self._counter}"
        event = CalendarEventData(
            provider_event_id=event_id,
            title=draft.title,
            start_time=draft.start_time,
            end_time=draft.normalized_end(),
            status="confirmed",
            description=draft.description,
            html_link=f"https://calendar.example/event/{event_id}",
            attendees=draft.attendees,
            patient_ref=draft.patient_ref,
            patient_name=draft.patient_name,
            patient_phone=draft.patient_phone,
        )
        self._events[event_id] = replace(event, patient_ref=None, patient_name=None, patient_phone=None)
        return event

    def update_event(
        self, access_token: str, provider_event_id: str, changes: EventChanges
    ) -> CalendarEventData:
        existing = self._events.get(provider_event_id)
        if existing is None:
            raise NotFound("Event not found")
        updated = replace(
            existing,
            title=changes.title if changes.title is not None else existing.title,
            description=changes.description if changes.description is not None else existing.description,
            start_time=changes.start_time or existing.start_time,
            end_time=changes.end_time or existing.end_time,
            attendees=changes.attendees if changes.attendees is not None else existing.attendees,
        )
        self._events[provider_event_id] = updated
        return updated

    def delete_event(self, access_token: str, provider_event_id: str) -> None:
        self._events.pop(provider_event_id, None)

    def cancel_event(self, provider_event_id: str) -> None:
        """Mark an event cancelled, as the provider reports for cancelled appointments."""

        existing = self._events.get(provider_event_id)
        if existing is not None:
            self._events[provider_event_id] = replace(existing, status="cancelled")

    def add_event(self, event: CalendarEventData) -> None:
        self._events[event.provider_event_id] = event


def parse_google_event(item: dict[str, Any]) -> CalendarEventData:
    """Summary: Normalize a provider event payload.

    Importance: Timed events use start.dateTime, all-day events start.date.
    Alternatives: Persist raw provider JSON.
    """

    start = _parse_event_time(item.get("start") or {})
    end = _parse_event_time(item.get("end") or {}) or start
    if start is None:
        raise ProviderError(f"Event {item.get('id')} has no start time")
    attendees = tuple(
        attendee["email"] for attendee in item.get("attendees") or [] if attendee.get("email")
    )
    return CalendarEventData(
        provider_event_id=item["id"],
        title=item.get("summary") or "No Title",
        start_time=start,
        end_time=end,
        status=item.get("status") or "confirmed",
        description=item.get("description"),
        html_link=item.get("htmlLink"),
        attendees=attendees,
    )


def _parse_event_time(value: dict[str, Any]) -> datetime | None:
    if value.get("dateTime"):
        return from_iso(value["dateTime"])
    if value.get("date"):
        return from_iso(f"{value['date']}T00:00:00+00:00")
    return None


def _rfc3339(value: datetime) -> str:
    return to_iso(value).replace("+00:00", "Z")
