"""Tests for Stripe checkout sessions, their storage lifecycle and payment state analysis.

The Stripe SDK is patched; the database session is a mock.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe

from src.app.payments.analyzer import PaymentStateAnalyzer, analyze_rows
from src.app.payments.repository import StripePaymentRepository
from src.app.payments.schedule import PaymentSchedule, ScheduleType
from src.app.payments.sessions import (
    PaymentSessionCreator,
    build_checkout_url,
    calculate_base_amount,
    to_minor_units,
)

FAR_CLOSE = "2099-06-15"


def _deal(**overrides) -> dict:
    deal = {"id": 42, "title": "Coliving", "value": 2000, "currency": "eur", "expected_close_date": FAR_CLOSE}
    deal.update(overrides)
    return deal


@pytest.fixture
def deps():
    pipedrive = MagicMock()
    pipedrive.get_deal_with_related_data = AsyncMock(
        return_value=(_deal(), {"email": [{"value": "anna@x.io"}]}, None)
    )
    pipedrive.get_deal_products = AsyncMock(return_value=[])
    repository = MagicMock()
    repository.create_payment = AsyncMock()
    repository.mark_canceled = AsyncMock(return_value=True)
    repository.mark_paid = AsyncMock(return_value=True)
    repository.mark_expired = AsyncMock(return_value=True)
    repository.list_open = AsyncMock(return_value=[])
    job_lock = MagicMock()
    job_lock.acquire = AsyncMock(return_value="token-1")
    job_lock.release = AsyncMock(return_value=True)
    return pipedrive, repository, job_lock


@pytest.fixture
def creator(deps) -> PaymentSessionCreator:
    pipedrive, repository, job_lock = deps
    return PaymentSessionCreator(
        pipedrive,
        repository,
        job_lock,
        api_key="sk_test_123",
        success_url="https://comoon.io/paid?src=stripe",
        cancel_url="https://comoon.io/cancel",
    )


# ── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_minor_units(self):
        assert to_minor_units(19.99) == 1999
        assert to_minor_units(1000) == 100000

    def test_checkout_url_keeps_query(self):
        url = build_checkout_url("https://comoon.io/paid?src=stripe", 42, "success")
        assert url == "https://comoon.io/paid?src=stripe&deal_id=42&status=success"

    def test_base_amount_precedence(self):
        assert calculate_base_amount({"value": 10}, [{"sum": 300, "item_price": 100, "quantity": 2}]) == 300
        assert calculate_base_amount({"value": 10}, [{"item_price": 100, "quantity": 2}]) == 200
        assert calculate_base_amount({"value": 10}, []) == 10


# ── Session creation ───────────────────────────────────────────────────────


class TestCreateSession:
    def test_api_key_required(self, deps):
        pipedrive, repository, job_lock = deps
        with pytest.raises(ValueError, match="STRIPE_API_KEY"):
            PaymentSessionCreator(pipedrive, repository, job_lock, "", "https://a", "https://b")

    async def test_split_deal_creates_half_deposit(self, creator, deps):
        _, repository, job_lock = deps
        fake_session = SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1")
        with patch.object(stripe.checkout.Session, "create", return_value=fake_session) as mock_create:
            result = await creator.create_session(42, trigger="api")

        assert result.success is True
        assert result.payment_type == "deposit"
        assert result.payment_schedule == "50/50"
        assert result.amount == 1000
        assert result.currency == "EUR"

        params = mock_create.call_args.kwargs
        line = params["line_items"][0]
        assert line["price_data"]["unit_amount"] == 100000
        assert line["price_data"]["currency"] == "eur"
        assert line["price_data"]["product_data"] == {"name": "Coliving"}
        assert params["metadata"]["payment_part"] == "1 of 2"
        assert params["metadata"]["deal_id"] == "42"
        assert params["customer_email"] == "anna@x.io"
        assert params["success_url"].endswith("deal_id=42&status=success")

        repository.create_payment.assert_awaited_once()
        assert repository.create_payment.await_args.kwargs["session_id"] == "cs_1"
        job_lock.acquire.assert_awaited_once_with("stripe_session:42", ttl=60)
        job_lock.release.assert_awaited_once_with("stripe_session:42", "token-1")

    async def test_full_deal_is_single(self, creator, deps):
        deps[0].get_deal_with_related_data.return_value = (_deal(expected_close_date=None), None, None)
        fake_session = SimpleNamespace(id="cs_2", url="https://checkout")
        with patch.object(stripe.checkout.Session, "create", return_value=fake_session) as mock_create:
            result = await creator.create_session(42)

        assert result.payment_type == "single"
        assert result.amount == 2000
        assert mock_create.call_args.kwargs["metadata"]["payment_part"] == "1 of 1"
        assert "customer_email" not in mock_create.call_args.kwargs

    async def test_rest_payment_second_part(self, creator):
        fake_session = SimpleNamespace(id="cs_3", url="https://checkout")
        with patch.object(stripe.checkout.Session, "create", return_value=fake_session) as mock_create:
            result = await creator.create_session(42, payment_type="rest")
        assert result.amount == 1000
        assert mock_create.call_args.kwargs["metadata"]["payment_part"] == "2 of 2"

    async def test_locked_deal(self, creator, deps):
        deps[2].acquire.return_value = None
        with patch.object(stripe.checkout.Session, "create") as mock_create:
            result = await creator.create_session(42)
        assert result.success is False
        assert result.error == "locked"
        mock_create.assert_not_called()

    async def test_redis_down_creates_without_lock(self, creator, deps):
        _, repository, job_lock = deps
        job_lock.acquire.side_effect = ConnectionError("redis down")
        fake_session = SimpleNamespace(id="cs_4", url="https://checkout")
        with patch.object(stripe.checkout.Session, "create", return_value=fake_session):
            result = await creator.create_session(42)

        assert result.success is True
        repository.create_payment.assert_awaited_once()
        job_lock.release.assert_not_awaited()

    async def test_release_failure_keeps_result(self, creator, deps):
        deps[2].release.side_effect = ConnectionError("redis down")
        fake_session = SimpleNamespace(id="cs_5", url="https://checkout")
        with patch.object(stripe.checkout.Session, "create", return_value=fake_session):
            result = await creator.create_session(42)
        assert result.success is True

    async def test_unknown_payment_type(self, creator):
        result = await creator.create_session(42, payment_type="tip")
        assert result.error == "Unknown payment type: tip"

    async def test_zero_amount(self, creator, deps):
        deps[0].get_deal_with_related_data.return_value = (_deal(value=0), None, None)
        result = await creator.create_session(42)
        assert result.error == "Payment amount must be greater than 0"

    async def test_stripe_error_reported_and_lock_released(self, creator, deps):
        _, repository, job_lock = deps
        with patch.object(
            stripe.checkout.Session, "create", side_effect=stripe.StripeError("card declined")
        ):
            result = await creator.create_session(42)
        assert result.success is False
        assert "card declined" in result.error
        repository.create_payment.assert_not_awaited()
        job_lock.release.assert_awaited_once()


class TestCancelAndRefresh:
    async def test_cancel_expires_then_marks(self, creator, deps):
        with patch.object(stripe.checkout.Session, "expire") as mock_expire:
            result = await creator.cancel_session("cs_1")
        mock_expire.assert_called_once_with("cs_1")
        deps[1].mark_canceled.assert_awaited_once_with("cs_1")
        assert result == {"success": True, "session_id": "cs_1", "changed": True}

    async def test_refresh_records_outcomes(self, creator, deps):
        repository = deps[1]
        repository.list_open.return_value = [
            SimpleNamespace(session_id="cs_paid"),
            SimpleNamespace(session_id="cs_expired"),
            SimpleNamespace(session_id="cs_open"),
            SimpleNamespace(session_id="cs_broken"),
        ]
        remote = {
            "cs_paid": SimpleNamespace(payment_status="paid", status="complete"),
            "cs_expired": SimpleNamespace(payment_status="unpaid", status="expired"),
            "cs_open": SimpleNamespace(payment_status="unpaid", status="open"),
        }

        def retrieve(session_id):
            if session_id not in remote:
                raise stripe.StripeError("No such checkout.session")
            return remote[session_id]

        with patch.object(stripe.checkout.Session, "retrieve", side_effect=retrieve):
            summary = await creator.refresh_open_sessions()

        assert summary["checked"] == 4
        assert summary["paid"] == 1
        assert summary["expired"] == 1
        assert summary["errors"][0]["session_id"] == "cs_broken"
        repository.mark_paid.assert_awaited_once_with("cs_paid")
        repository.mark_expired.assert_awaited_once_with("cs_expired")


# ── Repository lifecycle ───────────────────────────────────────────────────


class TestRepositoryTransitions:
    async def test_transition_changed(self, session_factory, fake_session):
        fake_session.execute.return_value = MagicMock(rowcount=1)
        repository = StripePaymentRepository(session_factory)
        assert await repository.mark_paid("cs_1") is True
        fake_session.commit.assert_awaited_once()

    async def test_transition_ignored_for_terminal_row(self, session_factory, fake_session):
        fake_session.execute.return_value = MagicMock(rowcount=0)
        repository = StripePaymentRepository(session_factory)
        assert await repository.mark_expired("cs_1") is False

    async def test_update_only_matches_created(self, session_factory, fake_session):
        fake_session.execute.return_value = MagicMock(rowcount=1)
        repository = StripePaymentRepository(session_factory)
        await repository.mark_canceled("cs_1")
        stmt = fake_session.execute.await_args.args[0]
        compiled = str(stmt.compile(compile_kwargs={"literal_binds": True}))
        assert "status = 'created'" in compiled
        assert "session_id = 'cs_1'" in compiled

    async def test_create_payment_adds_row(self, session_factory, fake_session):
        repository = StripePaymentRepository(session_factory)
        row = await repository.create_payment(
            deal_id=42,
            session_id="cs_1",
            checkout_url="https://checkout",
            payment_type="deposit",
            payment_schedule="50/50",
            amount=1000,
            currency="EUR",
            trigger="api",
        )
        fake_session.add.assert_called_once_with(row)
        assert row.status == "created"
        assert row.metadata_json == {}


# ── Analyzer ───────────────────────────────────────────────────────────────


def _row(payment_type: str, status: str = "created", payment_status: str = "unpaid") -> SimpleNamespace:
    return SimpleNamespace(payment_type=payment_type, status=status, payment_status=payment_status)


SPLIT = PaymentSchedule(schedule=ScheduleType.SPLIT)
FULL = PaymentSchedule(schedule=ScheduleType.FULL)


class TestAnalyzer:
    def test_split_without_sessions_needs_deposit(self):
        state = analyze_rows([], SPLIT)
        assert state.needs_deposit is True
        assert state.needs_rest is False

    def test_active_deposit_blocks_new_deposit(self):
        state = analyze_rows([_row("deposit")], SPLIT)
        assert state.deposit.active is True
        assert state.needs_deposit is False
        assert state.needs_rest is False

    def test_paid_deposit_needs_rest(self):
        state = analyze_rows([_row("first", status="paid", payment_status="paid")], SPLIT)
        assert state.needs_rest is True

    def test_expired_rest_needs_rest_again(self):
        rows = [
            _row("deposit", status="paid", payment_status="paid"),
            _row("final", status="expired"),
        ]
        state = analyze_rows(rows, SPLIT)
        assert state.rest.exists is True
        assert state.needs_rest is True

    def test_paid_single_covers_split_deposit(self):
        state = analyze_rows([_row("single", status="paid", payment_status="paid")], SPLIT)
        assert state.needs_deposit is False

    def test_full_needs_single_unless_anything_present(self):
        assert analyze_rows([], FULL).needs_single is True
        assert analyze_rows([_row("deposit")], FULL).needs_single is False
        assert analyze_rows([_row(None, status="canceled")], FULL).needs_single is True

    async def test_analyzer_reads_deal_rows(self):
        repository = MagicMock()
        repository.list_for_deal = AsyncMock(return_value=[_row("payment")])
        state = await PaymentStateAnalyzer(repository).analyze(42, FULL)
        repository.list_for_deal.assert_awaited_once_with(42)
        assert state.single.active is True
        assert state.total_payments == 1
