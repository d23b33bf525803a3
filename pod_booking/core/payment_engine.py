"""
Payment reconciliation engine.

Creates VNPay payment intents and settles the gateway's callbacks. The
gateway delivers notifications at least once, over two channels (the
customer's browser redirect and the server-to-server IPN), in any order, so
settlement must be idempotent per order id:

1. Verify the signature (pure HMAC, no lock needed)
2. Acquire the payment lock for the order id
3. Load the payment, compare amounts
4. If it already left INITIATED, report ALREADY_PROCESSED and change nothing
5. Otherwise move it to AUTHORIZED or FAILED, audit and outbox in one commit
6. After a failure, release the booking it was paying for
7. Release the lock

Only the first valid callback reaches step 5, which is what makes the
booking release in step 6 fire exactly once.
"""
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.config import Settings, get_settings
from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.identifiers import next_order_id, order_day, placeholder_booking_id
from pod_booking.core.locking import (
    LockManager,
    get_lock_manager,
    order_sequence_lock_key,
    payment_lock_key,
)
from pod_booking.core.outbox import write_outbox_event
from pod_booking.database.connection import transaction
from pod_booking.database.models import Payment, PaymentEvent
from pod_booking.domain.clock import as_utc, parse_gateway_date, to_vn, utcnow
from pod_booking.domain.errors import (
    AmountMismatchError,
    InvalidSignatureError,
    InvalidTransitionError,
    NotFoundError,
    PodBookingError,
    ValidationError,
)
from pod_booking.domain.states import PaymentStatus, next_payment_status
from pod_booking.integrations import vnpay
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

IPV4_MAPPED_PREFIX = "::ffff:"
TRANSACTION_DATE_RE = re.compile(r"^\d{8}$")

# IPN response vocabulary; the gateway matches these literally.
IPN_SUCCESS = ("00", "Confirm Success")
IPN_ORDER_NOT_FOUND = ("01", "Order not found")
IPN_ALREADY_CONFIRMED = ("02", "Order already confirmed")
IPN_INVALID_AMOUNT = ("04", "Invalid amount")
IPN_INVALID_SIGNATURE = ("97", "Invalid signature")
IPN_UNKNOWN_ERROR = ("99", "Unknown error")

RefundSender = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class SettlementOutcome(str, Enum):
    """What a valid callback did to the payment."""

    APPLIED = "APPLIED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"


@dataclass
class SettlementResult:
    """Result of settling one callback."""

    outcome: SettlementOutcome
    payment: Payment
    gateway_success: bool
    response_code: Optional[str]
    message: str

    @property
    def matches_stored_state(self) -> bool:
        """Whether the callback agrees with what is already recorded."""
        expected = PaymentStatus.AUTHORIZED if self.gateway_success else PaymentStatus.FAILED
        return self.payment.status == expected.value


@dataclass
class PaymentIntent:
    """A created payment and the signed URL to send the customer to."""

    payment: Payment
    payment_url: str


@dataclass
class RefundResult:
    payment: Payment
    refund_request: Dict[str, Any]
    gateway_response: Optional[Dict[str, Any]] = None


@dataclass
class QueryResult:
    payment: Payment
    query_request: Dict[str, Any]


@dataclass
class _CallbackData:
    order_id: Optional[str]
    amount: Optional[int]
    success: bool
    response_code: Optional[str]
    gateway_data: Dict[str, Any] = field(default_factory=dict)


def normalize_ip(ip_addr: Optional[str]) -> str:
    """Strip the IPv4-mapped IPv6 prefix; default to loopback."""
    if not ip_addr:
        return "127.0.0.1"
    ip_addr = ip_addr.split(",")[0].strip()
    if ip_addr.startswith(IPV4_MAPPED_PREFIX):
        return ip_addr[len(IPV4_MAPPED_PREFIX):]
    return ip_addr


def _parse_callback(verified: Mapping[str, str], secure_hash: Optional[str]) -> _CallbackData:
    raw_amount = verified.get("vnp_Amount")
    amount: Optional[int] = None
    if raw_amount is not None:
        try:
            whole, minor = divmod(int(raw_amount), 100)
        except ValueError:
            logger.warning("vnpay_amount_unparseable", amount=raw_amount)
        else:
            # Gateway amounts are x100; a remainder never matches a stored amount
            amount = whole if minor == 0 else None

    pay_date = verified.get("vnp_PayDate")
    paid_at = None
    if pay_date:
        try:
            paid_at = parse_gateway_date(pay_date).isoformat()
        except ValueError:
            logger.warning("vnpay_pay_date_unparseable", pay_date=pay_date)

    return _CallbackData(
        order_id=verified.get("vnp_TxnRef"),
        amount=amount,
        success=vnpay.is_success(verified),
        response_code=verified.get("vnp_ResponseCode"),
        gateway_data={
            "transaction_no": verified.get("vnp_TransactionNo"),
            "bank_code": verified.get("vnp_BankCode"),
            "card_type": verified.get("vnp_CardType"),
            "response_code": verified.get("vnp_ResponseCode"),
            "transaction_status": verified.get("vnp_TransactionStatus"),
            "pay_date": pay_date,
            "paid_at": paid_at,
            "secure_hash": secure_hash,
        },
    )


def _validate_transaction_date(transaction_date: str) -> None:
    if not TRANSACTION_DATE_RE.match(transaction_date or ""):
        raise ValidationError(
            "transaction_date must be in YYYYMMDD format", transaction_date=transaction_date
        )


class PaymentEngine:
    """Payment intents, callback settlement, refunds, queries and expiry."""

    def __init__(
        self,
        booking_coordinator: Optional[BookingCoordinator] = None,
        lock_manager: Optional[LockManager] = None,
        refund_sender: Optional[RefundSender] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Args:
            booking_coordinator: Releases bookings behind failed payments
            lock_manager: Keyed lock backend (defaults to the configured one)
            refund_sender: Coroutine that submits a signed refund request to
                the gateway; without one refund requests are returned unsent
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.lock_manager = lock_manager or get_lock_manager()
        self.booking_coordinator = booking_coordinator or BookingCoordinator(
            lock_manager=self.lock_manager, settings=self.settings
        )
        self.refund_sender = refund_sender

        logger.info("payment_engine_initialized", sandbox=self.settings.is_sandbox)

    @staticmethod
    def _record_payment_event(
        db: AsyncSession,
        payment_id: str,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: str,
    ) -> None:
        db.add(
            PaymentEvent(
                payment_id=payment_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
                created_at=utcnow(),
            )
        )

    @staticmethod
    def _payload(payment: Payment) -> Dict[str, Any]:
        return {
            "payment_id": payment.payment_id,
            "order_id": payment.order_id,
            "booking_id": payment.booking_id,
            "amount": payment.amount,
            "status": payment.status,
        }

    # Intents

    async def create_payment(
        self,
        db: AsyncSession,
        amount: int,
        order_info: str,
        ip_addr: Optional[str] = None,
        booking_id: Optional[str] = None,
        bank_code: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> PaymentIntent:
        """
        Create an INITIATED payment and its signed redirect URL.

        Raises:
            ValidationError: If amount is not a positive integer or order_info is blank
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive integer", amount=amount)
        if not order_info or not order_info.strip():
            raise ValidationError("order_info is required")

        correlation_id = str(uuid.uuid4())
        now = utcnow()
        ip = normalize_ip(ip_addr)
        booking_ref = booking_id or placeholder_booking_id()

        logger.info(
            "payment_creation_started",
            correlation_id=correlation_id,
            booking_id=booking_ref,
            amount=amount,
        )

        async with self.lock_manager.hold(order_sequence_lock_key(order_day(now))):
            order_id = await next_order_id(db, now)
            async with transaction(db):
                payment = Payment(
                    order_id=order_id,
                    booking_id=booking_ref,
                    amount=amount,
                    method="VNPAY",
                    order_info=order_info,
                    status=PaymentStatus.INITIATED.value,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + timedelta(minutes=self.settings.payment_expiry_minutes),
                )
                db.add(payment)
                await db.flush()

                self._record_payment_event(
                    db,
                    payment.payment_id,
                    "payment.created",
                    {"order_id": order_id, "amount": amount, "ip_addr": ip},
                    correlation_id,
                )

        payment_url = vnpay.build_payment_url(
            order_id=order_id,
            amount=amount,
            order_info=order_info,
            ip_addr=ip,
            created_at=now,
            bank_code=bank_code if bank_code is not None else self.settings.vnp_bank_code,
            locale=locale,
            settings=self.settings,
        )

        metrics.record_payment_intent(amount)
        logger.info(
            "payment_created",
            correlation_id=correlation_id,
            payment_id=payment.payment_id,
            order_id=order_id,
        )
        return PaymentIntent(payment=payment, payment_url=payment_url)

    # Settlement

    async def _load_for_update(self, db: AsyncSession, order_id: str) -> Payment:
        result = await db.execute(
            select(Payment)
            .where(Payment.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError("Order not found", order_id=order_id)
        return payment

    async def settle_callback(
        self, db: AsyncSession, params: Mapping[str, Any]
    ) -> SettlementResult:
        """
        Verify a gateway callback and apply it at most once.

        Raises:
            InvalidSignatureError: Signature missing or wrong; nothing is read or written
            NotFoundError: No payment with the callback's order id
            AmountMismatchError: Callback amount differs from the stored amount
        """
        verified = vnpay.verify_params(params, self.settings)
        data = _parse_callback(verified, params.get(vnpay.SECURE_HASH_FIELD))
        if not data.order_id:
            raise NotFoundError("Callback carries no order id")

        correlation_id = str(uuid.uuid4())
        order_id = data.order_id

        async with self.lock_manager.hold(payment_lock_key(order_id)):
            async with transaction(db):
                payment = await self._load_for_update(db, order_id)

                if data.amount != payment.amount:
                    logger.warning(
                        "payment_callback_amount_mismatch",
                        order_id=order_id,
                        expected=payment.amount,
                        received=data.amount,
                    )
                    raise AmountMismatchError(
                        "Callback amount does not match the payment",
                        order_id=order_id,
                        expected_amount=payment.amount,
                        received_amount=data.amount,
                    )

                if payment.status != PaymentStatus.INITIATED.value:
                    logger.info(
                        "payment_callback_already_processed",
                        order_id=order_id,
                        status=payment.status,
                        gateway_success=data.success,
                    )
                    return SettlementResult(
                        outcome=SettlementOutcome.ALREADY_PROCESSED,
                        payment=payment,
                        gateway_success=data.success,
                        response_code=data.response_code,
                        message="Payment already processed",
                    )

                target = PaymentStatus.AUTHORIZED if data.success else PaymentStatus.FAILED
                payment.status = next_payment_status(payment.status, target).value
                payment.gateway_data = data.gateway_data
                payment.updated_at = utcnow()
                if data.success:
                    payment.authorized_at = payment.updated_at

                event_type = f"payment.{target.value.lower()}"
                self._record_payment_event(
                    db, payment.payment_id, event_type, data.gateway_data, correlation_id
                )
                write_outbox_event(
                    db, payment.payment_id, "payment", event_type, self._payload(payment)
                )

            logger.info(
                "payment_settled",
                correlation_id=correlation_id,
                order_id=order_id,
                status=payment.status,
                response_code=data.response_code,
            )

            if not data.success:
                await self._release_booking(db, payment)

        return SettlementResult(
            outcome=SettlementOutcome.APPLIED,
            payment=payment,
            gateway_success=data.success,
            response_code=data.response_code,
            message=vnpay.get_response_message(data.response_code),
        )

    async def _release_booking(self, db: AsyncSession, payment: Payment) -> None:
        """
        Roll back the booking behind a payment that will never be paid.

        The payment change is already committed; a failure here is logged
        and left for staff, not reported to the gateway.
        """
        order_id, booking_id = payment.order_id, payment.booking_id
        try:
            await self.booking_coordinator.release_for_failed_payment(db, booking_id)
        except PodBookingError as e:
            logger.error(
                "payment_booking_release_failed",
                order_id=order_id,
                booking_id=booking_id,
                error=e.code,
            )
            # The rollback expired everything in the session
            await db.refresh(payment)

    async def handle_return(
        self, db: AsyncSession, params: Mapping[str, Any]
    ) -> SettlementResult:
        """Browser redirect channel: same settlement, errors propagate to the HTTP layer."""
        started = time.monotonic()
        try:
            result = await self.settle_callback(db, params)
        except PodBookingError as e:
            metrics.record_callback("return", e.code, time.monotonic() - started)
            raise
        metrics.record_callback("return", result.outcome.value, time.monotonic() - started)
        return result

    async def handle_ipn(self, db: AsyncSession, params: Mapping[str, Any]) -> Dict[str, str]:
        """
        Server-to-server notification channel. Never raises.

        Returns:
            Dict[str, str]: {"RspCode": ..., "Message": ...}
        """
        started = time.monotonic()
        order_id = params.get("vnp_TxnRef")
        try:
            result = await self.settle_callback(db, params)
            if result.outcome == SettlementOutcome.APPLIED or result.matches_stored_state:
                code, message = IPN_SUCCESS
            else:
                code, message = IPN_ALREADY_CONFIRMED
        except InvalidSignatureError:
            code, message = IPN_INVALID_SIGNATURE
        except NotFoundError:
            code, message = IPN_ORDER_NOT_FOUND
        except AmountMismatchError:
            code, message = IPN_INVALID_AMOUNT
        except Exception as e:
            logger.error("payment_ipn_error", order_id=order_id, error=str(e), exc_info=True)
            code, message = IPN_UNKNOWN_ERROR

        metrics.record_callback("ipn", code, time.monotonic() - started)
        logger.info("payment_ipn_handled", order_id=order_id, rsp_code=code)
        return {"RspCode": code, "Message": message}

    # Refunds and queries

    async def request_refund(
        self,
        db: AsyncSession,
        order_id: str,
        amount: int,
        reason: Optional[str] = None,
        ip_addr: Optional[str] = None,
        transaction_date: Optional[str] = None,
        created_by: str = "system",
    ) -> RefundResult:
        """
        Originate a refund for an AUTHORIZED payment.

        The signed request is handed to ``refund_sender`` after the audit
        record commits; the payment stays AUTHORIZED until mark_refunded.

        Raises:
            NotFoundError: Unknown order
            InvalidTransitionError: Payment is not AUTHORIZED
            ValidationError: Amount outside (0, payment.amount] or bad date
        """
        if transaction_date is not None:
            _validate_transaction_date(transaction_date)
        correlation_id = str(uuid.uuid4())

        async with self.lock_manager.hold(payment_lock_key(order_id)):
            async with transaction(db):
                payment = await self._load_for_update(db, order_id)

                if payment.status != PaymentStatus.AUTHORIZED.value:
                    raise InvalidTransitionError(
                        f"Cannot refund a payment in status {payment.status}",
                        entity="payment",
                        order_id=order_id,
                        current_status=payment.status,
                    )
                if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                    raise ValidationError("Refund amount must be a positive integer", amount=amount)
                if amount > payment.amount:
                    raise ValidationError(
                        "Refund amount cannot exceed payment amount",
                        amount=amount,
                        payment_amount=payment.amount,
                    )

                gateway_data = payment.gateway_data or {}
                refund_request = vnpay.build_refund_request(
                    order_id=order_id,
                    amount=amount,
                    transaction_date=transaction_date
                    or to_vn(as_utc(payment.created_at)).strftime("%Y%m%d"),
                    ip_addr=normalize_ip(ip_addr),
                    reason=reason or "Customer request",
                    full_refund=amount == payment.amount,
                    transaction_no=gateway_data.get("transaction_no"),
                    created_by=created_by,
                    settings=self.settings,
                )
                self._record_payment_event(
                    db,
                    payment.payment_id,
                    "payment.refund_requested",
                    {"amount": amount, "reason": reason, "created_by": created_by},
                    correlation_id,
                )

        logger.info(
            "payment_refund_requested",
            correlation_id=correlation_id,
            order_id=order_id,
            amount=amount,
            sent=self.refund_sender is not None,
        )

        gateway_response = None
        if self.refund_sender is not None:
            gateway_response = await self.refund_sender(refund_request)
        return RefundResult(
            payment=payment, refund_request=refund_request, gateway_response=gateway_response
        )

    async def mark_refunded(self, db: AsyncSession, order_id: str) -> Payment:
        """AUTHORIZED -> REFUNDED once the gateway confirms the refund."""
        correlation_id = str(uuid.uuid4())
        async with self.lock_manager.hold(payment_lock_key(order_id)):
            async with transaction(db):
                payment = await self._load_for_update(db, order_id)
                payment.status = next_payment_status(
                    payment.status, PaymentStatus.REFUNDED
                ).value
                payment.updated_at = utcnow()
                self._record_payment_event(
                    db, payment.payment_id, "payment.refunded", {}, correlation_id
                )
                write_outbox_event(
                    db, payment.payment_id, "payment", "payment.refunded", self._payload(payment)
                )

        logger.info("payment_refunded", order_id=order_id)
        return payment

    async def query_payment_status(
        self, db: AsyncSession, order_id: str, transaction_date: str
    ) -> QueryResult:
        """Local payment plus a signed querydr request for the gateway."""
        _validate_transaction_date(transaction_date)
        payment = await self.get_payment_by_order_id(db, order_id)
        query_request = vnpay.build_query_request(
            order_id=order_id, transaction_date=transaction_date, settings=self.settings
        )
        return QueryResult(payment=payment, query_request=query_request)

    # Expiry

    async def expire_stale_payments(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """
        Cancel INITIATED payments whose payment window has closed.

        Each payment is re-checked under its own lock, so one settled in the
        meantime is skipped. Returns the number cancelled.
        """
        now = as_utc(now or utcnow())
        result = await db.execute(
            select(Payment.order_id, Payment.expires_at).where(
                Payment.status == PaymentStatus.INITIATED.value,
                Payment.expires_at.is_not(None),
            )
        )
        candidates = [oid for oid, expires_at in result.all() if as_utc(expires_at) < now]
        await db.commit()

        expired = 0
        for order_id in candidates:
            correlation_id = str(uuid.uuid4())
            async with self.lock_manager.hold(payment_lock_key(order_id)):
                async with transaction(db):
                    payment = await self._load_for_update(db, order_id)
                    if payment.status != PaymentStatus.INITIATED.value:
                        continue
                    payment.status = next_payment_status(
                        payment.status, PaymentStatus.CANCELLED
                    ).value
                    payment.updated_at = now
                    self._record_payment_event(
                        db,
                        payment.payment_id,
                        "payment.expired",
                        {"expires_at": as_utc(payment.expires_at).isoformat()},
                        correlation_id,
                    )
                    write_outbox_event(
                        db, payment.payment_id, "payment", "payment.expired", self._payload(payment)
                    )

                expired += 1
                logger.info("payment_expired", correlation_id=correlation_id, order_id=order_id)
                await self._release_booking(db, payment)

        metrics.record_payments_expired(expired)
        return expired

    # Lookups

    async def get_payment_by_order_id(self, db: AsyncSession, order_id: str) -> Payment:
        result = await db.execute(select(Payment).where(Payment.order_id == order_id))
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError("Payment not found", order_id=order_id)
        return payment

    async def get_payment(self, db: AsyncSession, payment_id: str) -> Payment:
        payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        return payment

    async def list_payments_for_booking(
        self, db: AsyncSession, booking_id: str
    ) -> List[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())
