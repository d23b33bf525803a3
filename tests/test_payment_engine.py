"""
Tests for payment creation and idempotent settlement of gateway callbacks.
"""
from datetime import timedelta
from typing import Tuple
from unittest.mock import AsyncMock
from urllib.parse import parse_qsl, urlsplit

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.config import Settings
from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.identifiers import ORDER_ID_RE, order_day
from pod_booking.core.payment_engine import (
    PaymentEngine,
    SettlementOutcome,
    normalize_ip,
)
from pod_booking.database.models import Booking, OutboxEvent, Payment, PaymentEvent, Pod
from pod_booking.domain.clock import as_utc, utcnow
from pod_booking.domain.errors import (
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pod_booking.domain.states import BookingStatus, PaymentStatus, PodStatus
from pod_booking.integrations import vnpay

from conftest import booking_window, signed_callback


async def _booked_payment(
    db: AsyncSession,
    coordinator: BookingCoordinator,
    engine: PaymentEngine,
    pod: Pod,
    amount: int = 250000,
) -> Tuple[str, str, str]:
    """Book the pod and open a payment for it; returns (pod_id, booking_id, order_id)."""
    pod_id = pod.id
    start, end = booking_window(1, 2)
    booking = await coordinator.create_booking(db, pod_id, "customer-1", start, end)
    intent = await engine.create_payment(
        db, amount=amount, order_info="Pod P01 2h", ip_addr="10.0.0.8", booking_id=booking.id
    )
    return pod_id, booking.id, intent.payment.order_id


async def _event_types(db: AsyncSession, model, column) -> list:
    result = await db.execute(select(column).order_by(model.id))
    return list(result.scalars().all())


class TestCreatePayment:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_initiated_payment_with_signed_url(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(
            test_db,
            amount=250000,
            order_info="Pod A01L 2h",
            ip_addr="::ffff:10.0.0.8",
            booking_id="b-1",
        )

        payment = intent.payment
        assert payment.status == PaymentStatus.INITIATED.value
        assert payment.order_id == f"ORDER-{order_day()}-001"
        assert ORDER_ID_RE.match(payment.order_id)
        assert payment.booking_id == "b-1"
        assert as_utc(payment.expires_at) - as_utc(payment.created_at) == timedelta(minutes=15)

        params = dict(parse_qsl(urlsplit(intent.payment_url).query))
        assert params["vnp_TxnRef"] == payment.order_id
        assert params["vnp_Amount"] == "25000000"
        assert params["vnp_IpAddr"] == "10.0.0.8"
        assert params["vnp_BankCode"] == "NCB"
        vnpay.verify_params(params, test_settings)

        events = (await test_db.execute(select(PaymentEvent))).scalars().all()
        assert [e.event_type for e in events] == ["payment.created"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_ids_increase_within_the_day(
        self, test_db: AsyncSession, payment_engine: PaymentEngine
    ) -> None:
        first = await payment_engine.create_payment(test_db, amount=1000, order_info="a")
        second = await payment_engine.create_payment(test_db, amount=1000, order_info="b")

        assert first.payment.order_id.endswith("-001")
        assert second.payment.order_id.endswith("-002")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_booking_gets_placeholder(
        self, test_db: AsyncSession, payment_engine: PaymentEngine
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=1000, order_info="walk-in")

        assert intent.payment.booking_id.startswith("BOOKING-")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 10.5])
    async def test_invalid_amount(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, amount
    ) -> None:
        with pytest.raises(ValidationError):
            await payment_engine.create_payment(test_db, amount=amount, order_info="x")

    @pytest.mark.unit
    def test_normalize_ip(self) -> None:
        assert normalize_ip("::ffff:192.168.1.4") == "192.168.1.4"
        assert normalize_ip("203.0.113.9, 10.0.0.1") == "203.0.113.9"
        assert normalize_ip(None) == "127.0.0.1"


class TestIpnSettlement:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_then_duplicate(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        booking_coordinator: BookingCoordinator,
        test_settings: Settings,
        pod: Pod,
    ) -> None:
        _, booking_id, order_id = await _booked_payment(
            test_db, booking_coordinator, payment_engine, pod
        )
        params = signed_callback(test_settings, order_id, 250000)

        first = await payment_engine.handle_ipn(test_db, params)
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        authorized_at = as_utc(payment.authorized_at)

        assert first == {"RspCode": "00", "Message": "Confirm Success"}
        assert payment.status == PaymentStatus.AUTHORIZED.value
        assert payment.gateway_data["transaction_no"] == "14012345"
        assert payment.gateway_data["bank_code"] == "NCB"

        second = await payment_engine.handle_ipn(test_db, params)
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)

        assert second["RspCode"] == "00"
        assert as_utc(payment.authorized_at) == authorized_at
        event_types = await _event_types(test_db, PaymentEvent, PaymentEvent.event_type)
        assert event_types == ["payment.created", "payment.authorized"]
        booking = await booking_coordinator.get_booking(test_db, booking_id)
        assert booking.status == BookingStatus.BOOKED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_releases_booking_once(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        booking_coordinator: BookingCoordinator,
        test_settings: Settings,
        pod: Pod,
    ) -> None:
        pod_id, booking_id, order_id = await _booked_payment(
            test_db, booking_coordinator, payment_engine, pod
        )
        params = signed_callback(test_settings, order_id, 250000, response_code="24")

        first = await payment_engine.handle_ipn(test_db, params)

        assert first["RspCode"] == "00"
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.FAILED.value
        booking = await booking_coordinator.get_booking(test_db, booking_id)
        assert booking.status == BookingStatus.CANCELLED.value
        pod_now = await booking_coordinator.pod_registry.get_pod(test_db, pod_id)
        assert pod_now.status == PodStatus.AVAILABLE.value

        # Redelivery of the same failure is acknowledged and changes nothing
        second = await payment_engine.handle_ipn(test_db, params)
        assert second["RspCode"] == "00"
        outbox_types = await _event_types(test_db, OutboxEvent, OutboxEvent.event_type)
        assert outbox_types.count("payment.failed") == 1
        assert outbox_types.count("booking.cancelled") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflicting_redelivery_reports_already_confirmed(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        booking_coordinator: BookingCoordinator,
        test_settings: Settings,
        pod: Pod,
    ) -> None:
        _, _, order_id = await _booked_payment(test_db, booking_coordinator, payment_engine, pod)
        await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, order_id, 250000, response_code="24")
        )

        late_success = await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, order_id, 250000)
        )

        assert late_success == {"RspCode": "02", "Message": "Order already confirmed"}
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.FAILED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_leaves_payment_initiated(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        booking_coordinator: BookingCoordinator,
        test_settings: Settings,
        pod: Pod,
    ) -> None:
        _, booking_id, order_id = await _booked_payment(
            test_db, booking_coordinator, payment_engine, pod, amount=300000
        )

        response = await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, order_id, 250000)
        )

        assert response == {"RspCode": "04", "Message": "Invalid amount"}
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.INITIATED.value
        booking = await booking_coordinator.get_booking(test_db, booking_id)
        assert booking.status == BookingStatus.BOOKED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fractional_gateway_amount_is_invalid_amount(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=250000, order_info="x")
        order_id = intent.payment.order_id
        params = signed_callback(test_settings, order_id, 250000, vnp_Amount="25000050")

        response = await payment_engine.handle_ipn(test_db, params)

        assert response == {"RspCode": "04", "Message": "Invalid amount"}
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.INITIATED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_amount_is_invalid_amount(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=1000, order_info="x")
        params = {"vnp_TxnRef": intent.payment.order_id, "vnp_ResponseCode": "00"}
        _, params[vnpay.SECURE_HASH_FIELD] = vnpay.sign_params(params, test_settings)

        response = await payment_engine.handle_ipn(test_db, params)

        assert response["RspCode"] == "04"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=1000, order_info="x")
        order_id = intent.payment.order_id
        params = signed_callback(test_settings, order_id, 1000)
        params["vnp_ResponseCode"] = "24"

        response = await payment_engine.handle_ipn(test_db, params)

        assert response == {"RspCode": "97", "Message": "Invalid signature"}
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.INITIATED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        response = await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, "ORDER-20250601-999", 1000)
        )

        assert response == {"RspCode": "01", "Message": "Order not found"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_is_unknown_error(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        test_settings: Settings,
        mocker,
    ) -> None:
        mocker.patch.object(
            payment_engine, "settle_callback", AsyncMock(side_effect=RuntimeError("db down"))
        )

        response = await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, "ORDER-20250601-001", 1000)
        )

        assert response == {"RspCode": "99", "Message": "Unknown error"}


class TestReturnChannel:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_return_then_ipn(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=5000, order_info="x")
        params = signed_callback(test_settings, intent.payment.order_id, 5000)

        returned = await payment_engine.handle_return(test_db, params)
        assert returned.outcome == SettlementOutcome.APPLIED
        assert returned.gateway_success is True
        assert returned.message == "Transaction successful"

        again = await payment_engine.handle_return(test_db, params)
        assert again.outcome == SettlementOutcome.ALREADY_PROCESSED
        assert again.matches_stored_state

        assert (await payment_engine.handle_ipn(test_db, params))["RspCode"] == "00"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_return_with_bad_signature_raises(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        params = signed_callback(test_settings, "ORDER-20250601-001", 5000)
        params[vnpay.SECURE_HASH_FIELD] = "0" * 128

        with pytest.raises(InvalidSignatureError):
            await payment_engine.handle_return(test_db, params)


class TestRefunds:
    async def _authorized(
        self, db: AsyncSession, engine: PaymentEngine, settings: Settings, amount: int = 250000
    ) -> str:
        intent = await engine.create_payment(db, amount=amount, order_info="x")
        order_id = intent.payment.order_id
        await engine.handle_ipn(db, signed_callback(settings, order_id, amount))
        return order_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_request(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        order_id = await self._authorized(test_db, payment_engine, test_settings)
        payment_engine.refund_sender = AsyncMock(return_value={"vnp_ResponseCode": "00"})

        result = await payment_engine.request_refund(
            test_db, order_id, amount=100000, reason="Pod fault", created_by="staff-1"
        )

        assert result.refund_request["vnp_TransactionType"] == "03"
        assert result.refund_request["vnp_Amount"] == 10000000
        assert result.refund_request["vnp_TransactionNo"] == "14012345"
        assert result.refund_request["vnp_CreateBy"] == "staff-1"
        assert result.gateway_response == {"vnp_ResponseCode": "00"}
        payment_engine.refund_sender.assert_awaited_once_with(result.refund_request)
        assert result.payment.status == PaymentStatus.AUTHORIZED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_then_mark_refunded(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        order_id = await self._authorized(test_db, payment_engine, test_settings)

        result = await payment_engine.request_refund(
            test_db, order_id, amount=250000, transaction_date="20250601"
        )
        assert result.refund_request["vnp_TransactionType"] == "02"
        assert result.refund_request["vnp_TransactionDate"] == "20250601"
        assert result.gateway_response is None

        refunded = await payment_engine.mark_refunded(test_db, order_id)
        assert refunded.status == PaymentStatus.REFUNDED.value

        with pytest.raises(InvalidTransitionError):
            await payment_engine.mark_refunded(test_db, order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_rules(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        pending = await payment_engine.create_payment(test_db, amount=1000, order_info="x")
        pending_order = pending.payment.order_id
        order_id = await self._authorized(test_db, payment_engine, test_settings)

        with pytest.raises(InvalidTransitionError):
            await payment_engine.request_refund(test_db, pending_order, amount=1000)
        with pytest.raises(ValidationError):
            await payment_engine.request_refund(test_db, order_id, amount=250001)
        with pytest.raises(ValidationError):
            await payment_engine.request_refund(test_db, order_id, amount=0)
        with pytest.raises(ValidationError):
            await payment_engine.request_refund(
                test_db, order_id, amount=1000, transaction_date="2025-06-01"
            )
        with pytest.raises(NotFoundError):
            await payment_engine.request_refund(test_db, "ORDER-20250601-999", amount=1000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_request(
        self, test_db: AsyncSession, payment_engine: PaymentEngine
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=1000, order_info="x")

        result = await payment_engine.query_payment_status(
            test_db, intent.payment.order_id, "20250601"
        )

        assert result.query_request["vnp_Command"] == "querydr"
        assert result.query_request["vnp_TxnRef"] == intent.payment.order_id


class TestExpiry:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_payment_cancelled_and_booking_released(
        self,
        test_db: AsyncSession,
        payment_engine: PaymentEngine,
        booking_coordinator: BookingCoordinator,
        test_settings: Settings,
        pod: Pod,
    ) -> None:
        pod_id, booking_id, order_id = await _booked_payment(
            test_db, booking_coordinator, payment_engine, pod
        )

        assert await payment_engine.expire_stale_payments(test_db) == 0
        expired = await payment_engine.expire_stale_payments(
            test_db, now=utcnow() + timedelta(minutes=20)
        )

        assert expired == 1
        payment = await payment_engine.get_payment_by_order_id(test_db, order_id)
        assert payment.status == PaymentStatus.CANCELLED.value
        booking = await booking_coordinator.get_booking(test_db, booking_id)
        assert booking.status == BookingStatus.CANCELLED.value
        pod_now = await booking_coordinator.pod_registry.get_pod(test_db, pod_id)
        assert pod_now.status == PodStatus.AVAILABLE.value

        # A late success for an expired payment does not revive it
        late = await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, order_id, 250000)
        )
        assert late["RspCode"] == "02"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settled_payments_are_not_expired(
        self, test_db: AsyncSession, payment_engine: PaymentEngine, test_settings: Settings
    ) -> None:
        intent = await payment_engine.create_payment(test_db, amount=1000, order_info="x")
        await payment_engine.handle_ipn(
            test_db, signed_callback(test_settings, intent.payment.order_id, 1000)
        )

        expired = await payment_engine.expire_stale_payments(
            test_db, now=utcnow() + timedelta(hours=1)
        )

        assert expired == 0
        stored = (await test_db.execute(select(Payment))).scalars().one()
        assert stored.status == PaymentStatus.AUTHORIZED.value
        booking_count = (await test_db.execute(select(Booking))).scalars().all()
        assert booking_count == []
