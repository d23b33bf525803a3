"""Incident reports against pods."""
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.config import Settings, get_settings
from pod_booking.core.locking import LockManager, get_lock_manager, pod_lock_key
from pod_booking.core.outbox import write_outbox_event
from pod_booking.core.pod_registry import PodRegistry
from pod_booking.database.connection import transaction
from pod_booking.database.models import Incident
from pod_booking.domain.errors import NotFoundError, ValidationError
from pod_booking.domain.states import (
    OUT_OF_SERVICE_SEVERITIES,
    IncidentSeverity,
    IncidentStatus,
    PodAction,
    next_incident_status,
)
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IncidentService:
    """
    Records incidents and takes pods out of service for serious ones.

    A HIGH or CRITICAL report and the pod's move to OUT_OF_SERVICE commit
    together under the pod lock.
    """

    def __init__(
        self,
        pod_registry: Optional[PodRegistry] = None,
        lock_manager: Optional[LockManager] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.lock_manager = lock_manager or get_lock_manager()
        self.pod_registry = pod_registry or PodRegistry(self.lock_manager, self.settings)

    async def report_incident(
        self,
        db: AsyncSession,
        pod_id: str,
        reporter_id: str,
        description: str,
        severity: IncidentSeverity = IncidentSeverity.LOW,
    ) -> Incident:
        """
        Create a PENDING incident.

        Raises:
            ValidationError: Blank description
            NotFoundError: Unknown pod
        """
        severity = IncidentSeverity(severity)
        if not description or not description.strip():
            raise ValidationError("Incident description is required")

        async with self.lock_manager.hold(pod_lock_key(pod_id)):
            async with transaction(db):
                pod = await self.pod_registry.load_for_update(db, pod_id)

                incident = Incident(
                    pod_id=pod_id,
                    reporter_id=reporter_id,
                    description=description.strip(),
                    severity=severity.value,
                    status=IncidentStatus.PENDING.value,
                )
                db.add(incident)
                await db.flush()

                if severity in OUT_OF_SERVICE_SEVERITIES:
                    self.pod_registry.apply_transition(
                        pod,
                        PodAction.FORCE_OUT_OF_SERVICE,
                        reason=f"Incident {incident.id} ({severity.value}): {incident.description}",
                    )

                write_outbox_event(
                    db,
                    incident.id,
                    "incident",
                    "incident.reported",
                    {
                        "incident_id": incident.id,
                        "pod_id": pod_id,
                        "severity": severity.value,
                        "pod_status": pod.status,
                    },
                )

        metrics.record_incident(severity.value)
        logger.info(
            "incident_reported",
            incident_id=incident.id,
            pod_id=pod_id,
            severity=severity.value,
            pod_status=pod.status,
        )
        return incident

    async def update_status(
        self, db: AsyncSession, incident_id: str, new_status: IncidentStatus
    ) -> Incident:
        """
        Move an incident forward (skipping ahead is allowed).

        Raises:
            NotFoundError: Unknown incident
            InvalidTransitionError: Same or earlier status
        """
        new_status = IncidentStatus(new_status)
        async with transaction(db):
            result = await db.execute(
                select(Incident)
                .where(Incident.id == incident_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            incident = result.scalar_one_or_none()
            if incident is None:
                raise NotFoundError("Incident not found", incident_id=incident_id)
            previous = incident.status
            incident.status = next_incident_status(previous, new_status).value

        logger.info(
            "incident_status_updated",
            incident_id=incident_id,
            from_status=previous,
            to_status=new_status.value,
        )
        return incident

    async def get_incident(self, db: AsyncSession, incident_id: str) -> Incident:
        incident = await db.get(Incident, incident_id)
        if incident is None:
            raise NotFoundError("Incident not found", incident_id=incident_id)
        return incident

    async def list_incidents(
        self,
        db: AsyncSession,
        pod_id: Optional[str] = None,
        status: Optional[IncidentStatus] = None,
    ) -> List[Incident]:
        stmt = select(Incident).order_by(Incident.created_at.desc())
        if pod_id is not None:
            stmt = stmt.where(Incident.pod_id == pod_id)
        if status is not None:
            stmt = stmt.where(Incident.status == IncidentStatus(status).value)
        result = await db.execute(stmt)
        return list(result.scalars().all())
