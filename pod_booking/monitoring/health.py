"""
Health checks for the liveness and readiness probes and /health.

Readiness covers what a request needs: the database, and Redis when locks
are Redis-backed. /health adds operational checks that degrade the status
without failing readiness:

- outbox backlog (events waiting or parked)
- payments left INITIATED past their expiry (expiry worker not running)
- gateway credentials still at their placeholders
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text

from pod_booking.config import Settings, get_settings
from pod_booking.database.connection import get_session_factory
from pod_booking.database.models import OutboxEvent, Payment
from pod_booking.domain.clock import utcnow
from pod_booking.domain.states import PaymentStatus

logger = structlog.get_logger(__name__)

PLACEHOLDER_PREFIX = "YOUR_"

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"


class HealthCheckError(Exception):
    """Raised when a dependency cannot be reached."""


class HealthCheck:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        outbox_backlog_threshold: int = 1000,
        overdue_payment_threshold: int = 50,
    ) -> None:
        self.settings = settings or get_settings()
        self.outbox_backlog_threshold = outbox_backlog_threshold
        self.overdue_payment_threshold = overdue_payment_threshold

    async def check_database(self) -> Dict[str, Any]:
        try:
            async with get_session_factory()() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e
        return {"status": HEALTHY}

    async def check_redis(self) -> Dict[str, Any]:
        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            await client.aclose()
        return {"status": HEALTHY}

    async def check_outbox(self) -> Dict[str, Any]:
        """Unpublished events, and how many of them already failed delivery."""
        async with get_session_factory()() as db:
            rows = (
                await db.execute(
                    select(OutboxEvent.attempts > 0, func.count(OutboxEvent.id))
                    .where(OutboxEvent.published.is_(False))
                    .group_by(OutboxEvent.attempts > 0)
                )
            ).all()
        counts = {bool(retried): count for retried, count in rows}
        pending = sum(counts.values())
        return {
            "status": DEGRADED if pending > self.outbox_backlog_threshold else HEALTHY,
            "pending": pending,
            "retrying": counts.get(True, 0),
        }

    async def check_overdue_payments(self) -> Dict[str, Any]:
        async with get_session_factory()() as db:
            overdue = (
                await db.execute(
                    select(func.count(Payment.payment_id)).where(
                        Payment.status == PaymentStatus.INITIATED.value,
                        Payment.expires_at < utcnow(),
                    )
                )
            ).scalar_one()
        return {
            "status": DEGRADED if overdue > self.overdue_payment_threshold else HEALTHY,
            "overdue": overdue,
        }

    async def check_gateway_config(self) -> Dict[str, Any]:
        unset = [
            name
            for name in ("vnp_tmn_code", "vnp_hash_secret")
            if getattr(self.settings, name).startswith(PLACEHOLDER_PREFIX)
        ]
        if unset and self.settings.is_production:
            return {"status": UNHEALTHY, "unset": unset}
        return {"status": DEGRADED if unset else HEALTHY, "sandbox": self.settings.is_sandbox}

    async def _run(
        self, checks: List[Tuple[str, Callable[[], Awaitable[Dict[str, Any]]]]]
    ) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for name, check in checks:
            try:
                results[name] = await check()
            except Exception as e:
                results[name] = {"status": UNHEALTHY, "error": str(e)}

        statuses = {r["status"] for r in results.values()}
        if UNHEALTHY in statuses:
            overall = UNHEALTHY
        elif DEGRADED in statuses:
            overall = DEGRADED
        else:
            overall = HEALTHY
        return {"status": overall, "checks": results}

    def _dependency_checks(self) -> List[Tuple[str, Callable[[], Awaitable[Dict[str, Any]]]]]:
        checks = [("database", self.check_database)]
        if self.settings.lock_backend == "redis":
            checks.append(("redis", self.check_redis))
        return checks

    async def check_all(self) -> Dict[str, Any]:
        """Dependencies plus operational checks."""
        result = await self._run(
            self._dependency_checks()
            + [
                ("outbox", self.check_outbox),
                ("payments", self.check_overdue_payments),
                ("gateway", self.check_gateway_config),
            ]
        )
        if result["status"] != HEALTHY:
            logger.warning("health_check_not_healthy", status=result["status"])
        return result

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; no dependency is touched."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Only the dependencies a request needs."""
        return await self._run(self._dependency_checks())
