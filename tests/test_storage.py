"""Summary: Tests for SQLite storage behavior.

Importance: Ensures the atomic upserts and compare-and-set updates hold at the SQL level.
Alternatives: Rely solely on service-level tests.
"""

from __future__ import annotations

from datetime import datetime, timezone

from clinicbridge.models import Attachment, CalendarEventData, User, to_iso
from clinicbridge.storage.sqlite_store import SqliteStore


T0 = "2026-03-02T09:00:00.000000+00:00"
T1 = "2026-03-02T09:05:00.000000+00:00"


def _conversation(store: SqliteStore, owner_id: int, display_name: str | None = None) -> int:
    return store.upsert_conversation(
        owner_id=owner_id,
        channel="whatsapp",
        phone_number="+15552223333",
        display_name=display_name,
        assigned_number="+15550001111",
        created_at=T0,
    )


def test_store_initializes_schema(tmp_path) -> None:
    """Summary: Ensure SQLite storage initializes without errors.

    Importance: Validates schema creation for local storage; repeat calls are safe.
    Alternatives: Use an external migration tool.
    """

    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    store.initialize()
    assert (tmp_path / "test.db").exists()


def test_ensure_user_is_idempotent(store: SqliteStore) -> None:
    first = store.ensure_user(User(display_name="Dr. Ana Ruiz", email="ana@clinic.test"))
    second = store.ensure_user(User(display_name="Ana", email="ana@clinic.test"))
    assert first == second
    assert store.get_user_by_email("ana@clinic.test").id == first


def test_conversation_upsert_keeps_one_row(store: SqliteStore, user_id: int) -> None:
    """Summary: Verify repeated upserts return the same conversation.

    Importance: One conversation per owner, channel, and phone number.
    Alternatives: Deduplicate conversations in a cleanup job.
    """

    first = _conversation(store, user_id)
    second = _conversation(store, user_id, display_name="María")
    third = _conversation(store, user_id)
    assert first == second == third
    conversation = store.get_conversation(first)
    assert conversation.display_name == "María"
    assert len(store.list_conversations(user_id)) == 1


def test_inbound_insert_is_idempotent(store: SqliteStore, user_id: int) -> None:
    conversation_id = _conversation(store, user_id)
    kwargs = dict(
        conversation_id=conversation_id,
        provider_message_id="SM100",
        sender_ref="+15552223333",
        content="Hola doctora",
        attachments=[Attachment(kind="image", url="https://media/0", mime_type="image/jpeg")],
        status="delivered",
        provider_status="received",
        timestamp=T0,
        preview="Hola doctora",
    )
    message_id, created = store.insert_inbound_message(**kwargs)
    again_id, again_created = store.insert_inbound_message(**kwargs)
    assert created is True
    assert again_created is False
    assert again_id == message_id
    assert store.count_messages(conversation_id) == 1
    conversation = store.get_conversation(conversation_id)
    assert conversation.unread_count == 1
    assert conversation.last_message_preview == "Hola doctora"
    message = store.get_message(message_id)
    assert message.attachments[0].url == "https://media/0"


def test_compare_and_set_status(store: SqliteStore, user_id: int) -> None:
    conversation_id = _conversation(store, user_id)
    message_id = store.insert_outbound_message(conversation_id, "user:1", "Hi", [], T0)
    assert store.compare_and_set_status(message_id, "queued", "sent", "sent") is True
    assert store.compare_and_set_status(message_id, "queued", "delivered", "delivered") is False
    message = store.get_message(message_id)
    assert message.status == "sent"
    assert message.provider_status == "sent"


def test_backfill_provider_id_only_once(store: SqliteStore, user_id: int) -> None:
    conversation_id = _conversation(store, user_id)
    message_id = store.insert_outbound_message(conversation_id, "user:1", "Hi", [], T0)
    assert store.get_message(message_id).provider_message_id is None
    assert store.backfill_provider_message_id(message_id, "SM1") is True
    assert store.backfill_provider_message_id(message_id, "SM2") is False
    assert store.get_message_by_provider_id("SM1").id == message_id


def test_soft_delete_clears_payload(store: SqliteStore, user_id: int) -> None:
    conversation_id = _conversation(store, user_id)
    message_id = store.insert_outbound_message(
        conversation_id, "user:1", "secret", [Attachment(kind="file", url="https://x")], T0
    )
    assert store.soft_delete_message(message_id, T1) is True
    assert store.soft_delete_message(message_id, T1) is False
    message = store.get_message(message_id)
    assert message.is_deleted
    assert message.content is None
    assert message.attachments == ()
    assert message.timestamp == T0


def test_calendar_event_upsert_keeps_patient_fields(store: SqliteStore, user_id: int) -> None:
    """Summary: Verify syncs without patient data do not erase local patient fields.

    Importance: Patient details live only locally, never at the provider.
    Alternatives: Encode patient fields in the provider event.
    """

    start = datetime(2026, 3, 5, 15, 0, tzinfo=timezone.utc)
    event = CalendarEventData(
        provider_event_id="evt-1",
        title="Consulta",
        start_time=start,
        end_time=start.replace(hour=16),
        status="confirmed",
        patient_name="María López",
        patient_phone="+15552223333",
    )
    store.save_calendar_event(user_id, event, to_iso(start), False)
    store.mark_reminder_sent("evt-1", "24h")
    synced = CalendarEventData(
        provider_event_id="evt-1",
        title="Consulta (updated)",
        start_time=start,
        end_time=start.replace(hour=16),
        status="confirmed",
    )
    store.save_calendar_event(user_id, synced, to_iso(start), False)
    stored = store.get_calendar_event("evt-1")
    assert stored.title == "Consulta (updated)"
    assert stored.patient_phone == "+15552223333"
    assert stored.reminder_sent_24h is True
    store.save_calendar_event(user_id, synced, to_iso(start), True)
    assert store.get_calendar_event("evt-1").reminder_sent_24h is False


def test_reminder_job_transitions_are_compare_and_set(store: SqliteStore) -> None:
    store.insert_reminder_job("job-1", "evt-1", "24h", "Consulta", T0, T0)
    assert [job.job_ref for job in store.list_due_reminder_jobs(T1, 10)] == ["job-1"]
    assert store.transition_reminder_job("job-1", "pending", "running") is True
    assert store.transition_reminder_job("job-1", "pending", "cancelled") is False
    assert store.transition_reminder_job("job-1", "running", "fired", finished_at=T1) is True
    job = store.get_reminder_job("job-1")
    assert job.status == "fired"
    assert job.finished_at == T1
    assert store.list_due_reminder_jobs(T1, 10) == []


def test_assigned_numbers_have_one_owner(store: SqliteStore, user_id: int) -> None:
    other_id = store.ensure_user(User(display_name="Dr. Luis Vega", email="luis@clinic.test"))
    assert store.add_assigned_number(user_id, "+15550001111") is True
    assert store.add_assigned_number(other_id, "+15550001111") is False
    assert store.find_owner_by_assigned_number("+15550001111") == user_id
    assert store.find_owner_by_assigned_number("+19990000000") is None


def test_requeue_stale_reminder_jobs(store: SqliteStore) -> None:
    store.insert_reminder_job("job-old", "evt-1", "24h", "Consulta", T0, T0)
    store.insert_reminder_job("job-new", "evt-1", "2h", "Consulta", T0, T0)
    store.transition_reminder_job("job-old", "pending", "running", claimed_at=T0)
    store.transition_reminder_job("job-new", "pending", "running", claimed_at=T1)
    assert store.requeue_stale_reminder_jobs(T0) == 1
    old = store.get_reminder_job("job-old")
    assert old.status == "pending"
    assert old.claimed_at is None
    assert store.get_reminder_job("job-new").status == "running"


def test_gateway_account_sid_has_one_holder(store: SqliteStore, user_id: int) -> None:
    other_id = store.ensure_user(User(display_name="Dr. Luis Vega", email="luis@clinic.test"))
    assert store.set_gateway_account(user_id, "ACsame", None, None) is True
    assert store.set_gateway_account(other_id, "ACsame", None, None) is False
    assert store.get_user(other_id).provider_account_sid is None
