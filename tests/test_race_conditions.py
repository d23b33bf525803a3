"""
Race condition tests for concurrent bookings, payments and callbacks.

Each concurrent caller gets its own session, as separate requests would.
"""
import asyncio
from typing import Any, List

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.locking import LocalLockManager
from pod_booking.core.payment_engine import PaymentEngine
from pod_booking.database.models import Booking, PaymentEvent, Pod
from pod_booking.domain.errors import LockTimeoutError, PodUnavailableError
from pod_booking.domain.states import PaymentStatus, PodStatus

from conftest import booking_window, signed_callback


class TestLocalLockManager:
    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_same_key_is_mutually_exclusive(self) -> None:
        manager = LocalLockManager(timeout_seconds=2.0)
        inside = 0
        max_inside = 0

        async def worker() -> None:
            nonlocal inside, max_inside
            async with manager.hold("pod:1"):
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(10)))

        assert max_inside == 1
        assert not manager.is_locked("pod:1")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self) -> None:
        manager = LocalLockManager(timeout_seconds=0.5)

        async with manager.hold("pod:1"):
            async with manager.hold("pod:2"):
                assert manager.is_locked("pod:1")
                assert manager.is_locked("pod:2")

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_timeout_raises(self) -> None:
        manager = LocalLockManager(timeout_seconds=0.05)

        async with manager.hold("payment:ORDER-1"):
            with pytest.raises(LockTimeoutError) as exc_info:
                async with manager.hold("payment:ORDER-1"):
                    pass

        assert exc_info.value.context["lock_key"] == "payment:ORDER-1"
        # Registry entries are dropped once nobody uses them
        assert manager._locks == {}


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_bookings_same_pod(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        booking_coordinator: BookingCoordinator,
        pod: Pod,
    ) -> None:
        """
        Ten customers book the same pod at once.

        Exactly one booking must succeed; the others see the pod occupied.
        """
        pod_id = pod.id
        start, end = booking_window(1, 2)

        async def book(i: int) -> Any:
            async with session_factory() as db:
                booking = await booking_coordinator.create_booking(
                    db, pod_id, f"customer-{i}", start, end
                )
                return booking.id

        results = await asyncio.gather(*(book(i) for i in range(10)), return_exceptions=True)

        successes = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, PodUnavailableError)]
        assert len(successes) == 1
        assert len(rejected) == 9

        async with session_factory() as db:
            count = (await db.execute(select(func.count(Booking.id)))).scalar_one()
            stored_pod = await db.get(Pod, pod_id)
        assert count == 1
        assert stored_pod.status == PodStatus.OCCUPIED.value

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payments_get_distinct_order_ids(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_engine: PaymentEngine,
    ) -> None:
        async def pay(i: int) -> str:
            async with session_factory() as db:
                intent = await payment_engine.create_payment(
                    db, amount=1000 + i, order_info=f"order {i}"
                )
                return intent.payment.order_id

        order_ids: List[str] = await asyncio.gather(*(pay(i) for i in range(5)))

        assert len(set(order_ids)) == 5
        assert sorted(oid[-3:] for oid in order_ids) == ["001", "002", "003", "004", "005"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_ipns_settle_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_engine: PaymentEngine,
        test_settings: Any,
    ) -> None:
        """The gateway redelivers the same IPN in parallel; it must apply once."""
        async with session_factory() as db:
            intent = await payment_engine.create_payment(db, amount=50000, order_info="x")
            order_id = intent.payment.order_id
        params = signed_callback(test_settings, order_id, 50000)

        async def deliver() -> dict:
            async with session_factory() as db:
                return await payment_engine.handle_ipn(db, params)

        responses = await asyncio.gather(*(deliver() for _ in range(5)))

        assert all(r["RspCode"] == "00" for r in responses)
        async with session_factory() as db:
            authorized_events = (
                await db.execute(
                    select(func.count(PaymentEvent.id)).where(
                        PaymentEvent.event_type == "payment.authorized"
                    )
                )
            ).scalar_one()
            payment = await payment_engine.get_payment_by_order_id(db, order_id)
        assert authorized_events == 1
        assert payment.status == PaymentStatus.AUTHORIZED.value
