"""FastAPI application for GitHub webhooks and team preferences."""

import hashlib
import hmac
import logging
from typing import Optional

import pytz
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, field_validator, model_validator
from starlette.concurrency import run_in_threadpool

from prnudge import __version__
from prnudge.config import Settings
from prnudge.database.store import NotFoundError, NudgeStore, StoreError
from prnudge.events import EventApplier, MalformedPayload, decode_event
from prnudge.models import BusinessHours, ChatMapping

logger = logging.getLogger("prnudge.server")


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    """Check a GitHub X-Hub-Signature-256 header against the raw body.

    Args:
        secret: Webhook secret shared with GitHub.
        body: Raw request body.
        signature_header: Header value, "sha256=<hexdigest>".

    Returns:
        True if the signature matches.
    """
    if not signature_header:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header, expected)


class PreferencesRequest(BaseModel):
    """Request body for updating team preferences."""

    timezone: Optional[str] = None
    # A stored 0 reads back as "not set", so team hours start at 1
    business_hours_start: Optional[int] = Field(default=None, ge=1, le=23)
    business_hours_end: Optional[int] = Field(default=None, ge=1, le=23)
    chat_access_token: Optional[str] = None
    chat_default_channel: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Invalid timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_business_hours(self) -> "PreferencesRequest":
        start, end = self.business_hours_start, self.business_hours_end
        if (start is None) != (end is None):
            raise ValueError("business_hours_start and business_hours_end must be set together")
        if start is not None and start > end:
            raise ValueError("business_hours_start must not be after business_hours_end")
        return self


class ChatMappingItem(BaseModel):
    github_login: str = Field(min_length=1)
    chat_user_id: str = Field(min_length=1)


class ChatMappingsRequest(BaseModel):
    """Request body for adding GitHub to chat user mappings."""

    mappings: list[ChatMappingItem] = Field(min_length=1)


def _installations_router(settings: Settings, store: NudgeStore) -> APIRouter:
    async def require_admin(authorization: Optional[str] = Header(None)) -> None:
        if not settings.admin_token:
            return
        token = authorization[7:] if authorization and authorization.startswith("Bearer ") else ""
        if not hmac.compare_digest(token, settings.admin_token):
            raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    router = APIRouter(
        prefix="/installations",
        tags=["installations"],
        dependencies=[Depends(require_admin)],
    )

    @router.put("/{installation_id}/preferences")
    def update_preferences(installation_id: int, body: PreferencesRequest):
        """Set timezone, business hours and chat settings of an installation."""
        hours = None
        if body.business_hours_start is not None:
            hours = BusinessHours(start=body.business_hours_start, end=body.business_hours_end)
        try:
            store.set_installation_preferences(
                installation_id,
                timezone=body.timezone,
                business_hours=hours,
                chat_access_token=body.chat_access_token,
                chat_default_channel=body.chat_default_channel,
            )
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Installation not found")
        except StoreError as e:
            logger.error(f"Failed to update preferences: {e}")
            raise HTTPException(status_code=503, detail="Storage unavailable")
        return {"status": "updated", "installation_id": installation_id}

    @router.post("/{installation_id}/chat-mappings")
    def add_chat_mappings(installation_id: int, body: ChatMappingsRequest):
        """Map GitHub logins to chat users of an installation."""
        mappings = [
            ChatMapping(github_login=m.github_login, chat_user_id=m.chat_user_id)
            for m in body.mappings
        ]
        try:
            store.add_chat_mappings(installation_id, mappings)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Installation not found")
        except StoreError as e:
            logger.error(f"Failed to add chat mappings: {e}")
            raise HTTPException(status_code=503, detail="Storage unavailable")
        return {"status": "updated", "mappings": len(mappings)}

    return router


def create_app(settings: Settings, store: NudgeStore, applier: EventApplier) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings.
        store: Workflow state storage.
        applier: Writes decoded webhook events to storage.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="PRNudge",
        description="Nudges the people blocking stale pull requests",
        version=__version__,
    )

    if not settings.github_webhook_secret:
        logger.warning("Webhook secret not configured, skipping signature verification")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__}

    @app.post("/webhook")
    async def webhook(request: Request):
        """GitHub webhook endpoint."""
        body = await request.body()

        if settings.github_webhook_secret and not verify_signature(
            settings.github_webhook_secret,
            body,
            request.headers.get("X-Hub-Signature-256", ""),
        ):
            raise HTTPException(status_code=401, detail="Invalid signature")

        event_type = request.headers.get("X-GitHub-Event", "")
        if not event_type:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        if event_type == "ping":
            return {"status": "pong", "zen": payload.get("zen", "")}

        action = payload.get("action", "")
        try:
            event = decode_event(event_type, payload)
        except MalformedPayload as e:
            logger.warning(str(e))
            raise HTTPException(status_code=400, detail="Malformed payload")

        if event is None:
            logger.debug(f"Ignoring unsupported event {event_type}.{action}")
            return {"status": "ignored", "event": event_type, "action": action}

        try:
            applied = await run_in_threadpool(applier.handle, event)
        except StoreError as e:
            logger.error(f"Failed to apply {event_type}.{action}: {e}")
            raise HTTPException(status_code=503, detail="Storage unavailable")

        return {
            "status": "processed" if applied else "ignored",
            "event": event_type,
            "action": action,
        }

    app.include_router(_installations_router(settings, store))

    return app
