"""Stripe Checkout Session creation and reconciliation for Pipedrive deals.

Sessions are created per deal and payment part (deposit, rest or single).
Session state is reconciled by polling Stripe for every session still in
``created``; webhooks are not consumed.

The Stripe SDK is synchronous, so calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import stripe
import structlog
from pydantic import BaseModel

from src.app.core.redis import JobLock
from src.app.payments.repository import StripePaymentRepository
from src.app.payments.schedule import PaymentScheduleService, ScheduleType
from src.app.services.pipedrive import PipedriveClient

logger = structlog.get_logger(__name__)

PAYMENT_TYPES = ("deposit", "rest", "single")
DEFAULT_PRODUCT_NAME = "Camp / Tourist service"
SESSION_LOCK_TTL = 60


class SessionResult(BaseModel):
    success: bool
    deal_id: int
    session_id: str | None = None
    checkout_url: str | None = None
    amount: float | None = None
    currency: str | None = None
    payment_type: str | None = None
    payment_schedule: str | None = None
    error: str | None = None


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def build_checkout_url(base_url: str, deal_id: int, status: str) -> str:
    parts = urlsplit(base_url)
    query = dict(parse_qsl(parts.query))
    query.update({"deal_id": str(deal_id), "status": status})
    return urlunsplit(parts._replace(query=urlencode(query)))


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def calculate_base_amount(deal: dict[str, Any], products: list[dict[str, Any]]) -> float:
    """Full amount for a deal: product sum, else price x quantity, else deal value."""
    if products:
        line = products[0]
        line_sum = _as_float(line.get("sum"))
        if line_sum > 0:
            return line_sum
        price = _as_float(line.get("item_price"))
        if price > 0:
            return price * (_as_float(line.get("quantity")) or 1)
    return _as_float(deal.get("value"))


def _customer_email(person: dict[str, Any] | None, organization: dict[str, Any] | None) -> str | None:
    for entity in (person, organization):
        if not entity:
            continue
        emails = entity.get("email")
        if isinstance(emails, list):
            for entry in emails:
                value = entry.get("value") if isinstance(entry, dict) else entry
                if value:
                    return value
        elif isinstance(emails, str) and emails:
            return emails
    return None


class PaymentSessionCreator:
    """Args:
        pipedrive: Pipedrive client.
        repository: Stripe session storage.
        job_lock: Redis lock guarding concurrent creation per deal (None disables it).
        api_key: Stripe secret key.
        success_url: Checkout success redirect.
        cancel_url: Checkout cancel redirect.
    """

    def __init__(
        self,
        pipedrive: PipedriveClient,
        repository: StripePaymentRepository,
        job_lock: JobLock | None,
        api_key: str,
        success_url: str,
        cancel_url: str,
    ) -> None:
        if not api_key:
            raise ValueError("STRIPE_API_KEY must be set")
        stripe.api_key = api_key
        self._pipedrive = pipedrive
        self._repository = repository
        self._job_lock = job_lock
        self._success_url = success_url
        self._cancel_url = cancel_url

    async def create_session(
        self,
        deal_id: int,
        payment_type: str | None = None,
        trigger: str = "manual",
        run_id: str | None = None,
    ) -> SessionResult:
        run_id = run_id or str(uuid.uuid4())
        lock_name = f"stripe_session:{deal_id}"
        token = None
        if self._job_lock is not None:
            try:
                token = await self._job_lock.acquire(lock_name, ttl=SESSION_LOCK_TTL)
            except Exception as exc:
                logger.warning("stripe_sessions.lock_unavailable", deal_id=deal_id, error=str(exc))
            else:
                if token is None:
                    return SessionResult(success=False, deal_id=deal_id, error="locked")

        try:
            return await self._create_session(deal_id, payment_type, trigger, run_id)
        except stripe.StripeError as exc:
            logger.error("stripe_sessions.stripe_failed", deal_id=deal_id, error=str(exc))
            return SessionResult(success=False, deal_id=deal_id, error=str(exc))
        except Exception as exc:
            logger.error("stripe_sessions.create_failed", deal_id=deal_id, error=str(exc))
            return SessionResult(success=False, deal_id=deal_id, error=str(exc))
        finally:
            if token is not None:
                try:
                    await self._job_lock.release(lock_name, token)
                except Exception as exc:
                    logger.warning("stripe_sessions.lock_release_failed", deal_id=deal_id, error=str(exc))

    async def _create_session(
        self,
        deal_id: int,
        payment_type: str | None,
        trigger: str,
        run_id: str,
    ) -> SessionResult:
        deal, person, organization = await self._pipedrive.get_deal_with_related_data(deal_id)
        if not deal:
            return SessionResult(success=False, deal_id=deal_id, error="Deal not found")
        products = await self._pipedrive.get_deal_products(deal_id)

        schedule = PaymentScheduleService.determine_schedule(
            deal.get("expected_close_date") or deal.get("close_date")
        )
        split = schedule.schedule == ScheduleType.SPLIT
        payment_type = payment_type or ("deposit" if split else "single")
        if payment_type not in PAYMENT_TYPES:
            return SessionResult(
                success=False, deal_id=deal_id, error=f"Unknown payment type: {payment_type}"
            )

        amount = calculate_base_amount(deal, products)
        if split and payment_type in ("deposit", "rest"):
            amount = round(amount / 2, 2)
        if amount <= 0:
            return SessionResult(success=False, deal_id=deal_id, error="Payment amount must be greater than 0")

        currency = (deal.get("currency") or "PLN").upper()
        email = _customer_email(person, organization)
        product_name = (
            (products[0].get("name") if products else None)
            or deal.get("title")
            or DEFAULT_PRODUCT_NAME
        )
        metadata = {
            "deal_id": str(deal_id),
            "payment_type": payment_type,
            "payment_schedule": schedule.schedule.value,
            "payment_part": ("1 of 2" if payment_type == "deposit" else "2 of 2") if split else "1 of 1",
            "trigger": trigger,
            "run_id": run_id,
        }
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": to_minor_units(amount),
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "success_url": build_checkout_url(self._success_url, deal_id, "success"),
            "cancel_url": build_checkout_url(self._cancel_url, deal_id, "cancel"),
        }
        if email:
            params["customer_email"] = email

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)

        await self._repository.create_payment(
            deal_id=deal_id,
            session_id=session.id,
            checkout_url=session.url,
            payment_type=payment_type,
            payment_schedule=schedule.schedule.value,
            amount=amount,
            currency=currency,
            trigger=trigger,
            metadata={"run_id": run_id, "created_at": datetime.now(timezone.utc).isoformat()},
        )
        logger.info(
            "stripe_sessions.created",
            deal_id=deal_id,
            session_id=session.id,
            payment_type=payment_type,
            amount=amount,
            currency=currency,
        )
        return SessionResult(
            success=True,
            deal_id=deal_id,
            session_id=session.id,
            checkout_url=session.url,
            amount=amount,
            currency=currency,
            payment_type=payment_type,
            payment_schedule=schedule.schedule.value,
        )

    async def cancel_session(self, session_id: str) -> dict[str, Any]:
        """Expire the session at Stripe and mark it canceled locally."""
        try:
            await asyncio.to_thread(stripe.checkout.Session.expire, session_id)
        except stripe.StripeError as exc:
            logger.error("stripe_sessions.cancel_failed", session_id=session_id, error=str(exc))
            return {"success": False, "session_id": session_id, "error": str(exc)}
        changed = await self._repository.mark_canceled(session_id)
        return {"success": True, "session_id": session_id, "changed": changed}

    async def refresh_open_sessions(self) -> dict[str, Any]:
        """Poll Stripe for every session still ``created`` and record outcomes."""
        rows = await self._repository.list_open()
        summary: dict[str, Any] = {"checked": 0, "paid": 0, "expired": 0, "errors": []}
        for row in rows:
            summary["checked"] += 1
            try:
                session = await asyncio.to_thread(stripe.checkout.Session.retrieve, row.session_id)
            except stripe.StripeError as exc:
                logger.warning("stripe_sessions.retrieve_failed", session_id=row.session_id, error=str(exc))
                summary["errors"].append({"session_id": row.session_id, "error": str(exc)})
                continue

            if session.payment_status == "paid":
                if await self._repository.mark_paid(row.session_id):
                    summary["paid"] += 1
            elif session.status == "expired":
                if await self._repository.mark_expired(row.session_id):
                    summary["expired"] += 1

        logger.info(
            "stripe_sessions.refreshed",
            checked=summary["checked"],
            paid=summary["paid"],
            expired=summary["expired"],
            errors=len(summary["errors"]),
        )
        return summary
