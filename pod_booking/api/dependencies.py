"""
Request-scoped dependencies: the acting user and the service objects.

Identity comes from the upstream identity collaborator as headers; this
service trusts them and only checks roles.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from pod_booking.core.booking_coordinator import BookingCoordinator
from pod_booking.core.incidents import IncidentService
from pod_booking.core.locking import get_lock_manager
from pod_booking.core.payment_engine import PaymentEngine
from pod_booking.core.pod_registry import PodRegistry

STAFF_ROLES = frozenset({"staff", "admin"})


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def get_actor(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: str = Header(default="customer", alias="X-User-Role"),
) -> Actor:
    """The acting user; 401 when the identity header is missing."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header is required"
        )
    return Actor(user_id=x_user_id, role=x_user_role.lower())


def require_staff(actor: Actor = Depends(get_actor)) -> Actor:
    """Staff-only operations (status overrides, pod management, refunds)."""
    if not actor.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff role required")
    return actor


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


@lru_cache()
def get_pod_registry() -> PodRegistry:
    return PodRegistry(lock_manager=get_lock_manager())


@lru_cache()
def get_booking_coordinator() -> BookingCoordinator:
    return BookingCoordinator(pod_registry=get_pod_registry(), lock_manager=get_lock_manager())


@lru_cache()
def get_payment_engine() -> PaymentEngine:
    return PaymentEngine(
        booking_coordinator=get_booking_coordinator(), lock_manager=get_lock_manager()
    )


@lru_cache()
def get_incident_service() -> IncidentService:
    return IncidentService(pod_registry=get_pod_registry(), lock_manager=get_lock_manager())
