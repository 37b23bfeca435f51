"""Summary: FastAPI application for ClinicBridge.

Importance: Exposes gateway webhooks and the interactive chat, calendar, and account endpoints.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator
import urllib.parse

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from clinicbridge.app import AppContext, AppServices, build_context
from clinicbridge.calendar import EventChanges, EventDraft
from clinicbridge.config import AppConfig
from clinicbridge.errors import ClinicBridgeError, Unauthenticated, ValidationError
from clinicbridge.models import Attachment, ensure_utc, utcnow
from clinicbridge.oauth import build_google_auth_url, create_state_token
from clinicbridge.storage.sqlite_store import StoredCalendarEvent, StoredConversation, StoredMessage


logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)


class ConversationCreateRequest(BaseModel):
    """Summary: Request payload for starting a chat.

    Importance: Finds or creates the conversation for a patient phone number.
    Alternatives: Create conversations implicitly on first send.
    """

    phone_number: str
    display_name: str | None = None
    channel: str = Field(default="whatsapp", pattern="^(whatsapp|sms|inapp)$")


class AttachmentPayload(BaseModel):
    """Attachment metadata sent with an outbound message."""

    kind: str = Field(pattern="^(image|audio|video|file)$")
    size_bytes: int = Field(default=0, ge=0)
    url: str | None = None
    storage_ref: str | None = None
    mime_type: str | None = None
    duration_seconds: float | None = None
    width: int | None = None
    height: int | None = None


class MessageSendRequest(BaseModel):
    """Summary: Request payload for sending a WhatsApp message.

    Importance: Supports text, media, and approved templates.
    Alternatives: Separate endpoints per message type.
    """

    content: str | None = None
    attachments: list[AttachmentPayload] = Field(default_factory=list)
    content_sid: str | None = None
    content_variables: str | None = None


class EventCreateRequest(BaseModel):
    """Summary: Request payload for creating an appointment.

    Importance: Patient fields stay local and drive reminders.
    Alternatives: Store patient details in the provider event description.
    """

    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    attendees: list[str] = Field(default_factory=list)
    patient_ref: str | None = None
    patient_name: str | None = None
    patient_phone: str | None = None


class EventUpdateRequest(BaseModel):
    """Partial appointment update; omitted fields stay unchanged."""

    title: str | None = None
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    attendees: list[str] | None = None


class GatewayAccountRequest(BaseModel):
    """Summary: Request payload for linking a gateway sub-account.

    Importance: The auth token is encrypted before storage.
    Alternatives: Configure sub-accounts through the CLI only.
    """

    account_sid: str
    auth_token: str | None = None


class AssignNumberRequest(BaseModel):
    """Request payload for assigning a gateway number to the caller."""

    phone_number: str


def _conversation_dict(conversation: StoredConversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "channel": conversation.channel,
        "external_contact": {
            "phone_number": conversation.phone_number,
            "display_name": conversation.display_name,
        },
        "assigned_number": conversation.assigned_number,
        "unread_count": conversation.unread_count,
        "last_message_preview": conversation.last_message_preview,
        "last_message_at": conversation.last_message_at,
        "last_read_at": conversation.last_read_at,
    }


def _message_dict(message: StoredMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "provider_message_id": message.provider_message_id,
        "direction": message.direction,
        "sender_ref": message.sender_ref,
        "content": message.display_content,
        "attachments": [attachment.to_dict() for attachment in message.attachments],
        "is_deleted": message.is_deleted,
        "status": message.status,
        "provider_status": message.provider_status,
        "timestamp": message.timestamp,
    }


def _event_dict(event: StoredCalendarEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "provider_event_id": event.provider_event_id,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "status": event.status,
        "patient_ref": event.patient_ref,
        "patient_name": event.patient_name,
        "patient_phone": event.patient_phone,
        "html_link": event.html_link,
        "reminder_sent_24h": event.reminder_sent_24h,
        "reminder_sent_2h": event.reminder_sent_2h,
        "reminder_24h_job_ref": event.reminder_24h_job_ref,
        "reminder_2h_job_ref": event.reminder_2h_job_ref,
        "last_synced_at": event.last_synced_at,
    }


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to ClinicBridge services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, config.log_level.upper(), logging.INFO),
            format="%(levelname)s %(name)s: %(message)s",
        )
    context = context or build_context(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        dispatcher = context.build_dispatcher() if config.scheduler_enabled else None
        if dispatcher is not None:
            dispatcher.start()
        try:
            yield
        finally:
            if dispatcher is not None:
                dispatcher.shutdown()

    app = FastAPI(title="ClinicBridge API", version="0.1.0", lifespan=lifespan)
    app.state.context = context
    app.state.oauth_states = {}

    @app.exception_handler(ClinicBridgeError)
    async def handle_clinicbridge_error(request: Request, exc: ClinicBridgeError) -> JSONResponse:
        """Summary: Map domain errors to HTTP statuses.

        Importance: Keeps endpoints free of per-error try/except blocks.
        Alternatives: Raise HTTPException from the services.
        """

        if exc.status_code >= 500:
            logger.error("%s on %s %s", exc.__class__.__name__, request.method, request.url.path)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    def _register_state(user_id: int, state: str) -> None:
        """Summary: Register an OAuth state token for a user.

        Importance: The callback resolves the user from the state, not from a header.
        Alternatives: Store state in a database or signed cookies.
        """

        app.state.oauth_states[state] = {"user_id": user_id, "created_at": utcnow()}

    def _consume_state(state: str) -> int:
        """Summary: Validate and consume an OAuth state token.

        Importance: Reduces CSRF risks in OAuth flows; each state is single-use.
        Alternatives: Use a dedicated session store for state.
        """

        record = app.state.oauth_states.pop(state, None)
        if not record:
            raise ValidationError("Invalid OAuth state")
        if utcnow() - record["created_at"] > OAUTH_STATE_TTL:
            raise ValidationError("OAuth state expired")
        return record["user_id"]

    def current_services(
        authorization: str | None = Header(default=None),
        x_api_key: str | None = Header(default=None),
    ) -> AppServices:
        """Summary: Resolve the caller from a bearer token or X-API-Key header.

        Importance: Every interactive endpoint runs as one explicit user.
        Alternatives: Use OAuth or session-based authentication.
        """

        token = x_api_key
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
        user_id = context.api_keys().resolve_user_id(token or "")
        if user_id is None:
            raise Unauthenticated("Missing or invalid API key")
        return context.services_for_user(user_id)

    def _signed_url(request: Request) -> str:
        if not config.webhook_base_url:
            return str(request.url)
        url = config.webhook_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += "?" + request.url.query
        return url

    async def _webhook_params(request: Request) -> dict[str, str]:
        body = (await request.body()).decode("utf-8")
        return dict(urllib.parse.parse_qsl(body, keep_blank_values=True))

    def _signature_header(request: Request) -> str | None:
        return request.headers.get("x-provider-signature") or request.headers.get("x-twilio-signature")

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    @app.post("/webhook/whatsapp/inbound")
    async def whatsapp_inbound(request: Request) -> Response:
        """Summary: Receive an inbound WhatsApp message from the gateway.

        Importance: Answers with a bare status code; no error text reaches the caller.
        Alternatives: Process webhooks from a queue.
        """

        params = await _webhook_params(request)
        outcome = await run_in_threadpool(
            context.webhooks().handle_inbound, _signed_url(request), params, _signature_header(request)
        )
        return Response(status_code=outcome.status_code)

    @app.post("/webhook/whatsapp/status")
    async def whatsapp_status(request: Request) -> Response:
        """Receive a delivery status callback from the gateway."""

        params = await _webhook_params(request)
        outcome = await run_in_threadpool(
            context.webhooks().handle_status, _signed_url(request), params, _signature_header(request)
        )
        return Response(status_code=outcome.status_code)

    @app.post("/conversations")
    def start_conversation(
        payload: ConversationCreateRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        """Summary: Start or reopen a chat with a phone number.

        Importance: Idempotent; the same number returns the same conversation.
        Alternatives: Require a patient record before chatting.
        """

        conversation_id = services.chat.start_chat(
            payload.phone_number, payload.display_name, payload.channel
        )
        conversation = services.store.get_conversation(conversation_id)
        return _conversation_dict(conversation)

    @app.get("/conversations")
    def list_conversations(
        limit: int = 100, services: AppServices = Depends(current_services)
    ) -> list[dict[str, Any]]:
        return [_conversation_dict(item) for item in services.chat.list_conversations(limit)]

    @app.get("/conversations/{conversation_id}/messages")
    def list_messages(
        conversation_id: int,
        limit: int = 50,
        before: str | None = None,
        services: AppServices = Depends(current_services),
    ) -> list[dict[str, Any]]:
        """Summary: Page through a conversation's messages in chronological order.

        Importance: Deleted messages appear with a placeholder in their original position.
        Alternatives: Return only non-deleted messages.
        """

        messages = services.chat.list_messages(conversation_id, max(1, min(limit, 200)), before)
        return [_message_dict(message) for message in messages]

    @app.post("/conversations/{conversation_id}/read")
    def mark_read(
        conversation_id: int, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        services.chat.mark_read(conversation_id)
        return {"conversation_id": conversation_id, "unread_count": 0}

    @app.post("/conversations/{conversation_id}/messages")
    def send_message(
        conversation_id: int,
        payload: MessageSendRequest,
        services: AppServices = Depends(current_services),
    ) -> dict[str, Any]:
        """Summary: Send a WhatsApp message in a conversation.

        Importance: Returns the stored message with its delivery status.
        Alternatives: Return only the provider message ID.
        """

        attachments = [Attachment(**item.model_dump()) for item in payload.attachments]
        message = services.chat.send_message(
            conversation_id,
            content=payload.content,
            attachments=attachments,
            content_sid=payload.content_sid,
            content_variables=payload.content_variables,
        )
        return _message_dict(message)

    @app.delete("/messages/{message_id}")
    def delete_message(
        message_id: int, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        return _message_dict(services.chat.delete_message(message_id))

    @app.post("/presence/heartbeat")
    def presence_heartbeat(services: AppServices = Depends(current_services)) -> dict[str, Any]:
        view = services.presence.heartbeat(services.user_id)
        return {"user_id": view.user_id, "last_seen_at": view.last_seen_at, "is_online": view.is_online}

    @app.get("/presence/{user_id}")
    def presence(user_id: int, services: AppServices = Depends(current_services)) -> dict[str, Any]:
        view = services.presence.get(user_id)
        return {"user_id": view.user_id, "last_seen_at": view.last_seen_at, "is_online": view.is_online}

    @app.get("/oauth/google")
    def oauth_google(services: AppServices = Depends(current_services)) -> dict[str, str]:
        """Summary: Start the Google OAuth flow.

        Importance: Provides the authorization URL for connecting a calendar.
        Alternatives: Require manual token entry.
        """

        state = create_state_token()
        _register_state(services.user_id, state)
        return {"url": build_google_auth_url(config, state), "state": state}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(code: str, state: str) -> str:
        """Summary: Handle the OAuth callback.

        Importance: Exchanges the code and stores encrypted tokens for the user who started the flow.
        Alternatives: Use a dedicated OAuth server.
        """

        user_id = _consume_state(state)
        context.services_for_user(user_id).calendar.connect(code)
        return "<html><body><h3>Calendar connected.</h3><p>You can close this window.</p></body></html>"

    @app.post("/calendar/sync")
    def calendar_sync(services: AppServices = Depends(current_services)) -> dict[str, int]:
        return {"synced": services.calendar.sync_events()}

    @app.get("/calendar/events")
    def calendar_events(
        limit: int = 100, services: AppServices = Depends(current_services)
    ) -> list[dict[str, Any]]:
        return [_event_dict(event) for event in services.calendar.list_events(limit)]

    @app.post("/calendar/events")
    def create_calendar_event(
        payload: EventCreateRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        """Summary: Create an appointment and schedule its reminders.

        Importance: An end time not after the start defaults to a 30 minute slot.
        Alternatives: Reject invalid time ranges.
        """

        draft = EventDraft(
            title=payload.title,
            start_time=ensure_utc(payload.start_time),
            end_time=ensure_utc(payload.end_time),
            description=payload.description,
            attendees=tuple(payload.attendees),
            patient_ref=payload.patient_ref,
            patient_name=payload.patient_name,
            patient_phone=payload.patient_phone,
        )
        return _event_dict(services.calendar.create_event(draft))

    @app.patch("/calendar/events/{provider_event_id}")
    def update_calendar_event(
        provider_event_id: str,
        payload: EventUpdateRequest,
        services: AppServices = Depends(current_services),
    ) -> dict[str, Any]:
        changes = EventChanges(
            title=payload.title,
            description=payload.description,
            start_time=ensure_utc(payload.start_time) if payload.start_time else None,
            end_time=ensure_utc(payload.end_time) if payload.end_time else None,
            attendees=tuple(payload.attendees) if payload.attendees is not None else None,
        )
        return _event_dict(services.calendar.update_event(provider_event_id, changes))

    @app.delete("/calendar/events/{provider_event_id}")
    def delete_calendar_event(
        provider_event_id: str, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        services.calendar.delete_event(provider_event_id)
        return {"deleted": True, "provider_event_id": provider_event_id}

    @app.post("/account/gateway")
    def set_gateway_account(
        payload: GatewayAccountRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        services.accounts.set_gateway_account(services.user_id, payload.account_sid, payload.auth_token)
        return {"account_sid": payload.account_sid, "has_auth_token": bool(payload.auth_token)}

    @app.post("/account/numbers")
    def assign_number(
        payload: AssignNumberRequest, services: AppServices = Depends(current_services)
    ) -> dict[str, Any]:
        phone_number = services.accounts.assign_number(services.user_id, payload.phone_number)
        return {"phone_number": phone_number, "numbers": services.accounts.list_numbers(services.user_id)}

    return app


def create_default_app() -> FastAPI:
    """Summary: Build the app from environment configuration.

    Importance: Entry point for `uvicorn --factory clinicbridge.api:create_default_app`.
    Alternatives: Create the app at import time.
    """

    return create_app(AppConfig.from_env())
