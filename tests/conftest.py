"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database (aiosqlite) per test and an
in-process lock manager, so no PostgreSQL or Redis is needed.
"""
import os

os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any, AsyncGenerator, Dict, List  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pod_booking.config import Settings  # noqa: E402
from pod_booking.core.booking_coordinator import BookingCoordinator  # noqa: E402
from pod_booking.core.incidents import IncidentService  # noqa: E402
from pod_booking.core.locking import LocalLockManager  # noqa: E402
from pod_booking.core.payment_engine import PaymentEngine  # noqa: E402
from pod_booking.core.pod_registry import PodRegistry  # noqa: E402
from pod_booking.database.models import Base, Pod, PodCluster  # noqa: E402
from pod_booking.integrations import vnpay  # noqa: E402

TEST_HASH_SECRET = "TESTSECRETKEY0123456789"
TEST_TMN_CODE = "TESTTMN1"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrent access scenarios")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/pods_test.db",
        lock_backend="local",
        lock_timeout_seconds=5.0,
        vnp_tmn_code=TEST_TMN_CODE,
        vnp_hash_secret=TEST_HASH_SECRET,
        vnp_return_url="http://test/vnpay/return",
        app_name="pod-booking-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory bound to a fresh SQLite database."""
    engine = create_async_engine(test_settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def lock_manager() -> LocalLockManager:
    return LocalLockManager(timeout_seconds=5.0)


@pytest.fixture
def pod_registry(lock_manager: LocalLockManager, test_settings: Settings) -> PodRegistry:
    return PodRegistry(lock_manager=lock_manager, settings=test_settings)


@pytest.fixture
def booking_coordinator(
    pod_registry: PodRegistry, lock_manager: LocalLockManager, test_settings: Settings
) -> BookingCoordinator:
    return BookingCoordinator(
        pod_registry=pod_registry, lock_manager=lock_manager, settings=test_settings
    )


@pytest.fixture
def payment_engine(
    booking_coordinator: BookingCoordinator,
    lock_manager: LocalLockManager,
    test_settings: Settings,
) -> PaymentEngine:
    return PaymentEngine(
        booking_coordinator=booking_coordinator,
        lock_manager=lock_manager,
        settings=test_settings,
    )


@pytest.fixture
def incident_service(
    pod_registry: PodRegistry, lock_manager: LocalLockManager, test_settings: Settings
) -> IncidentService:
    return IncidentService(
        pod_registry=pod_registry, lock_manager=lock_manager, settings=test_settings
    )


@pytest_asyncio.fixture
async def cluster(test_db: AsyncSession, pod_registry: PodRegistry) -> PodCluster:
    return await pod_registry.create_cluster(test_db, "loc-hcm-01", "Floor 3")


@pytest_asyncio.fixture
async def pod(test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster) -> Pod:
    """A single AVAILABLE pod with the default 480 minute session limit."""
    pods = await pod_registry.create_pods(test_db, cluster.id, code="P01", name="Pod P01")
    return pods[0]


def booking_window(
    start_hours: float = 1, duration_hours: float = 2
) -> tuple[datetime, datetime]:
    """A [start, end) window starting ``start_hours`` from now."""
    start = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=start_hours)
    return start, start + timedelta(hours=duration_hours)


def signed_callback(
    settings: Settings,
    order_id: str,
    amount: int,
    response_code: str = "00",
    **overrides: Any,
) -> Dict[str, str]:
    """Callback query parameters as the gateway would send them, signed."""
    params: Dict[str, str] = {
        "vnp_TmnCode": settings.vnp_tmn_code,
        "vnp_TxnRef": order_id,
        "vnp_Amount": str(amount * 100),
        "vnp_OrderInfo": "Pod booking payment",
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TransactionNo": "14012345",
        "vnp_BankCode": "NCB",
        "vnp_CardType": "ATM",
        "vnp_PayDate": "20250601103000",
    }
    params.update(overrides)
    _, secure_hash = vnpay.sign_params(params, settings)
    params[vnpay.SECURE_HASH_FIELD] = secure_hash
    return params


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    pod_registry: PodRegistry,
    booking_coordinator: BookingCoordinator,
    payment_engine: PaymentEngine,
    incident_service: IncidentService,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app, wired to the test database and services."""
    from pod_booking.api import dependencies
    from pod_booking.api.main import app
    from pod_booking.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_pod_registry] = lambda: pod_registry
    app.dependency_overrides[dependencies.get_booking_coordinator] = lambda: booking_coordinator
    app.dependency_overrides[dependencies.get_payment_engine] = lambda: payment_engine
    app.dependency_overrides[dependencies.get_incident_service] = lambda: incident_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


STAFF_HEADERS: Dict[str, str] = {"X-User-Id": "staff-1", "X-User-Role": "staff"}
CUSTOMER_HEADERS: Dict[str, str] = {"X-User-Id": "customer-1"}


def codes_of(pods: List[Pod]) -> List[str]:
    return [p.code for p in pods]
