"""Payments webhook relay: verify, de-duplicate, apply subscription transitions.

Each provider event is applied at most once. The ``ProcessedEvent`` marker row
and the subscription change commit in the same transaction, so a replay, or a
concurrent duplicate delivery, never moves a subscription twice.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import WebhookSettings
from .db import ensure_schema, get_session, retry_on_db_lock
from .errors import WebhookVerificationError
from .models import ProcessedEvent, Subscription, _utcnow_naive

_logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
PRO_TIER = "pro"
FREE_TIER = "free"


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def verify_event(payload: bytes, signature: str | None, settings: WebhookSettings) -> dict[str, Any]:
    """Check the signature header and return the decoded event object."""
    if not settings.secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if not signature:
        raise WebhookVerificationError(f"Missing {SIGNATURE_HEADER} header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Payload is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(text, signature, settings.secret, settings.tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(f"Signature verification failed: {exc}") from exc
    try:
        event = json.loads(text)
    except ValueError as exc:
        raise WebhookVerificationError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Event must be an object with 'id' and 'type'")
    return event


async def _by_customer(session: AsyncSession, customer_id: str | None) -> Subscription | None:
    if not customer_id:
        return None
    result = await session.execute(select(Subscription).where(Subscription.stripe_customer_id == customer_id))
    return result.scalars().first()


async def _checkout_completed(session: AsyncSession, obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    user_id = obj.get("client_reference_id") or metadata.get("userId")
    if not user_id:
        _logger.warning("webhook.checkout.missing_user", extra={"session_id": obj.get("id")})
        return "skipped"
    subscription = await session.get(Subscription, user_id)
    if subscription is None:
        subscription = Subscription(user_id=user_id)
        session.add(subscription)
    now = _utcnow_naive()
    subscription.tier = PRO_TIER
    subscription.stripe_customer_id = obj.get("customer")
    subscription.stripe_subscription_id = obj.get("subscription")
    subscription.status = "active"
    subscription.is_active = True
    subscription.subscription_start = now
    subscription.subscription_end = None
    subscription.cancel_at_period_end = False
    subscription.updated_at = now
    _logger.info("webhook.checkout.completed", extra={"user_id": user_id})
    return "applied"


async def _subscription_updated(session: AsyncSession, obj: dict[str, Any]) -> str:
    subscription = await _by_customer(session, obj.get("customer"))
    if subscription is None:
        _logger.warning("webhook.subscription.unknown_customer", extra={"customer": obj.get("customer")})
        return "skipped"
    sub_status = obj.get("status")
    subscription.status = sub_status
    subscription.is_active = sub_status == "active"
    subscription.subscription_end = _from_epoch(obj.get("cancel_at"))
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    subscription.updated_at = _utcnow_naive()
    _logger.info(
        "webhook.subscription.updated",
        extra={"user_id": subscription.user_id, "status": sub_status},
    )
    return "applied"


async def _subscription_deleted(session: AsyncSession, obj: dict[str, Any]) -> str:
    subscription = await _by_customer(session, obj.get("customer"))
    if subscription is None:
        _logger.warning("webhook.subscription.unknown_customer", extra={"customer": obj.get("customer")})
        return "skipped"
    now = _utcnow_naive()
    subscription.tier = FREE_TIER
    subscription.is_active = False
    subscription.status = "canceled"
    subscription.subscription_end = now
    subscription.updated_at = now
    _logger.info("webhook.subscription.deleted", extra={"user_id": subscription.user_id})
    return "applied"


async def _invoice_logged(session: AsyncSession, obj: dict[str, Any]) -> str:
    _logger.info("webhook.invoice", extra={"invoice": obj.get("id"), "customer": obj.get("customer")})
    return "logged"


_HANDLERS = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_succeeded": _invoice_logged,
    "invoice.payment_failed": _invoice_logged,
}


@retry_on_db_lock()
async def process_event(event: dict[str, Any]) -> dict[str, Any]:
    """Apply ``event`` once. Returns the response body for the provider."""
    await ensure_schema()
    event_id = str(event["id"])
    event_type = str(event["type"])
    async with get_session() as session:
        if await session.get(ProcessedEvent, event_id) is not None:
            _logger.info("webhook.duplicate", extra={"event_id": event_id, "type": event_type})
            return {"received": True, "duplicate": True}
        handler = _HANDLERS.get(event_type)
        if handler is None:
            _logger.info("webhook.unhandled", extra={"event_id": event_id, "type": event_type})
            outcome = "ignored"
        else:
            obj = (event.get("data") or {}).get("object") or {}
            outcome = await handler(session, obj)
        session.add(ProcessedEvent(event_id=event_id, event_type=event_type))
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent delivery of the same id won the race.
            await session.rollback()
            _logger.info("webhook.duplicate", extra={"event_id": event_id, "type": event_type})
            return {"received": True, "duplicate": True}
    return {"received": True, "type": event_type, "outcome": outcome}


def build_webhook_router(settings: WebhookSettings) -> APIRouter:
    router = APIRouter()

    @router.post("/webhook")
    async def receive_webhook(request: Request) -> JSONResponse:
        payload = await request.body()
        try:
            event = verify_event(payload, request.headers.get(SIGNATURE_HEADER), settings)
        except WebhookVerificationError as exc:
            _logger.warning("webhook.rejected", extra={"error": str(exc)})
            return JSONResponse({"error": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)
        try:
            body = await process_event(event)
        except Exception as exc:
            _logger.exception("webhook.failed", extra={"event_id": event.get("id"), "type": event.get("type")})
            return JSONResponse({"error": str(exc) or type(exc).__name__}, status_code=500)
        return JSONResponse(body)

    return router
