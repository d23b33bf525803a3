"""
Pod registry.

Owns clusters and pods, and applies the pod state machine from
pod_booking.domain.states. Every status change follows the same flow:

1. Acquire the pod lock
2. Load the pod row (SELECT ... FOR UPDATE where supported)
3. Compute the next status with the pure transition function
4. Commit
5. Release the lock

Components that already hold the pod lock and own the transaction (booking
coordinator, incident handling) call ``apply_transition`` directly.
"""
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.config import Settings, get_settings
from pod_booking.core.identifiers import (
    LOWER_LEVEL,
    POD_LEVELS,
    grid_pod_code,
    normalize_pod_code,
)
from pod_booking.core.locking import LockManager, get_lock_manager, pod_lock_key
from pod_booking.database.connection import transaction
from pod_booking.database.models import Pod, PodCluster
from pod_booking.domain.clock import utcnow
from pod_booking.domain.errors import (
    DuplicateCodeError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pod_booking.domain.states import PodAction, PodStatus, next_pod_status
from pod_booking.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

UPDATABLE_POD_FIELDS = frozenset(
    {
        "code",
        "name",
        "description",
        "cluster_id",
        "soundproof_level",
        "ventilation_level",
        "power_outlets",
        "wifi_available",
        "max_session_duration",
    }
)


def validate_amenities(
    soundproof_level: Optional[int] = None,
    ventilation_level: Optional[int] = None,
    power_outlets: Optional[int] = None,
    max_session_duration: Optional[int] = None,
) -> None:
    """Raise ValidationError for amenity values outside their ranges."""
    for field, value in (
        ("soundproof_level", soundproof_level),
        ("ventilation_level", ventilation_level),
    ):
        if value is not None and not 1 <= value <= 5:
            raise ValidationError(f"{field} must be between 1 and 5", field=field, value=value)
    if power_outlets is not None and power_outlets < 0:
        raise ValidationError("power_outlets cannot be negative", value=power_outlets)
    if max_session_duration is not None and max_session_duration < 60:
        raise ValidationError(
            "max_session_duration must be at least 60 minutes", value=max_session_duration
        )


class PodRegistry:
    """Cluster and pod records plus guarded pod status changes."""

    def __init__(
        self,
        lock_manager: Optional[LockManager] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.lock_manager = lock_manager or get_lock_manager()

    # Clusters

    async def create_cluster(
        self,
        db: AsyncSession,
        location_id: str,
        name: str,
        description: Optional[str] = None,
    ) -> PodCluster:
        """
        Create a cluster. Names are unique within a location.

        Raises:
            ValidationError: If the name is blank
            DuplicateCodeError: If the location already has a cluster with this name
        """
        name = name.strip()
        if not name:
            raise ValidationError("Cluster name is required")

        async with transaction(db):
            existing = await db.execute(
                select(PodCluster.id).where(
                    PodCluster.location_id == location_id, PodCluster.name == name
                )
            )
            if existing.first() is not None:
                raise DuplicateCodeError(
                    f"Cluster {name!r} already exists in this location",
                    location_id=location_id,
                    name=name,
                )
            cluster = PodCluster(location_id=location_id, name=name, description=description)
            db.add(cluster)

        logger.info("cluster_created", cluster_id=cluster.id, location_id=location_id, name=name)
        return cluster

    async def get_cluster(self, db: AsyncSession, cluster_id: str) -> PodCluster:
        cluster = await db.get(PodCluster, cluster_id)
        if cluster is None:
            raise NotFoundError("Cluster not found", cluster_id=cluster_id)
        return cluster

    async def list_clusters(
        self, db: AsyncSession, location_id: Optional[str] = None
    ) -> List[PodCluster]:
        stmt = select(PodCluster).order_by(PodCluster.name)
        if location_id is not None:
            stmt = stmt.where(PodCluster.location_id == location_id)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # Pods

    def _grid_layout(
        self, num_rows: int, num_cols: int, description: Optional[str]
    ) -> List[Dict[str, Any]]:
        if num_rows <= 0 or num_cols <= 0:
            raise ValidationError(
                "num_rows and num_cols must be positive", num_rows=num_rows, num_cols=num_cols
            )
        if num_rows > self.settings.grid_max_rows:
            raise ValidationError(
                f"num_rows cannot exceed {self.settings.grid_max_rows}", num_rows=num_rows
            )
        if num_cols > self.settings.grid_max_cols:
            raise ValidationError(
                f"num_cols cannot exceed {self.settings.grid_max_cols}", num_cols=num_cols
            )
        total = num_rows * num_cols * len(POD_LEVELS)
        if total > self.settings.grid_max_total_pods:
            raise ValidationError(
                f"Grid would create {total} pods, limit is {self.settings.grid_max_total_pods}",
                total=total,
            )

        layout = []
        for row in range(num_rows):
            for col in range(num_cols):
                for level in POD_LEVELS:
                    code = grid_pod_code(row, col, level)
                    level_name = "lower" if level == LOWER_LEVEL else "upper"
                    layout.append(
                        {
                            "code": code,
                            "name": f"Pod {code}",
                            "description": description
                            or f"Grid pod at row {row + 1}, col {col + 1}, {level_name} level",
                        }
                    )
        return layout

    async def create_pods(
        self,
        db: AsyncSession,
        cluster_id: str,
        *,
        num_rows: Optional[int] = None,
        num_cols: Optional[int] = None,
        code: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        soundproof_level: int = 3,
        ventilation_level: int = 3,
        power_outlets: int = 2,
        wifi_available: bool = True,
        max_session_duration: int = 480,
    ) -> List[Pod]:
        """
        Create pods in a cluster, either a grid or a single pod.

        Grid mode (num_rows and num_cols) creates two pods per cell, lower
        and upper level, coded e.g. A01L, A01U, A02L ... Single mode needs
        code and name. The batch is all-or-nothing.

        Raises:
            NotFoundError: If the cluster does not exist
            ValidationError: Bad dimensions, ceilings exceeded or missing fields
            DuplicateCodeError: A code repeats in the batch or already exists
        """
        validate_amenities(
            soundproof_level, ventilation_level, power_outlets, max_session_duration
        )

        if num_rows is not None and num_cols is not None:
            layout = self._grid_layout(num_rows, num_cols, description)
        elif code and name:
            layout = [{"code": normalize_pod_code(code), "name": name, "description": description}]
        else:
            raise ValidationError(
                "Provide num_rows and num_cols for a grid, or code and name for a single pod"
            )

        codes = [entry["code"] for entry in layout]
        if len(set(codes)) != len(codes):
            raise DuplicateCodeError("Duplicate pod codes in batch", cluster_id=cluster_id)

        async with transaction(db):
            await self.get_cluster(db, cluster_id)

            result = await db.execute(
                select(Pod.code).where(Pod.cluster_id == cluster_id, Pod.code.in_(codes))
            )
            taken = sorted(result.scalars().all())
            if taken:
                raise DuplicateCodeError(
                    "Pod codes already exist in this cluster",
                    cluster_id=cluster_id,
                    codes=taken,
                )

            pods = [
                Pod(
                    cluster_id=cluster_id,
                    code=entry["code"],
                    name=entry["name"],
                    description=entry["description"],
                    status=PodStatus.AVAILABLE.value,
                    soundproof_level=soundproof_level,
                    ventilation_level=ventilation_level,
                    power_outlets=power_outlets,
                    wifi_available=wifi_available,
                    max_session_duration=max_session_duration,
                )
                for entry in layout
            ]
            db.add_all(pods)

        logger.info(
            "pods_created",
            cluster_id=cluster_id,
            count=len(pods),
            mode="grid" if num_rows is not None else "single",
        )
        return pods

    async def get_pod(self, db: AsyncSession, pod_id: str) -> Pod:
        pod = await db.get(Pod, pod_id)
        if pod is None:
            raise NotFoundError("Pod not found", pod_id=pod_id)
        return pod

    async def list_pods(
        self,
        db: AsyncSession,
        cluster_id: Optional[str] = None,
        status: Optional[PodStatus] = None,
        code: Optional[str] = None,
    ) -> List[Pod]:
        """Pods filtered by cluster, status and code substring."""
        stmt = select(Pod).order_by(Pod.cluster_id, Pod.code)
        if cluster_id is not None:
            stmt = stmt.where(Pod.cluster_id == cluster_id)
        if status is not None:
            stmt = stmt.where(Pod.status == PodStatus(status).value)
        if code:
            stmt = stmt.where(Pod.code.contains(normalize_pod_code(code)))
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def load_for_update(self, db: AsyncSession, pod_id: str) -> Pod:
        """
        Load a pod with a row lock, refreshing any copy already in the session.

        Caller must hold the pod lock.
        """
        result = await db.execute(
            select(Pod)
            .where(Pod.id == pod_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        pod = result.scalar_one_or_none()
        if pod is None:
            raise NotFoundError("Pod not found", pod_id=pod_id)
        return pod

    async def update_pod(self, db: AsyncSession, pod_id: str, **changes: Any) -> Pod:
        """
        Update pod attributes. Status is changed only through transitions.

        Raises:
            ValidationError: Unknown or read-only field, or value out of range
            NotFoundError: Pod or target cluster missing
            DuplicateCodeError: The code is taken in the target cluster
        """
        unknown = set(changes) - UPDATABLE_POD_FIELDS
        if unknown:
            raise ValidationError("Fields cannot be updated", fields=sorted(unknown))
        validate_amenities(
            changes.get("soundproof_level"),
            changes.get("ventilation_level"),
            changes.get("power_outlets"),
            changes.get("max_session_duration"),
        )
        if "code" in changes:
            changes["code"] = normalize_pod_code(changes["code"])
            if not changes["code"]:
                raise ValidationError("Pod code cannot be blank")

        async with self.lock_manager.hold(pod_lock_key(pod_id)):
            async with transaction(db):
                pod = await self.load_for_update(db, pod_id)

                target_cluster = changes.get("cluster_id", pod.cluster_id)
                target_code = changes.get("code", pod.code)
                if target_cluster != pod.cluster_id:
                    await self.get_cluster(db, target_cluster)
                if (target_cluster, target_code) != (pod.cluster_id, pod.code):
                    clash = await db.execute(
                        select(Pod.id).where(
                            Pod.cluster_id == target_cluster,
                            Pod.code == target_code,
                            Pod.id != pod.id,
                        )
                    )
                    if clash.first() is not None:
                        raise DuplicateCodeError(
                            "Pod code already exists in this cluster",
                            cluster_id=target_cluster,
                            code=target_code,
                        )

                for field, value in changes.items():
                    setattr(pod, field, value)

        logger.info("pod_updated", pod_id=pod_id, fields=sorted(changes))
        return pod

    async def delete_pod(self, db: AsyncSession, pod_id: str) -> None:
        """
        Delete a pod.

        Raises:
            InvalidTransitionError: If the pod is OCCUPIED
        """
        async with self.lock_manager.hold(pod_lock_key(pod_id)):
            async with transaction(db):
                pod = await self.load_for_update(db, pod_id)
                if pod.status == PodStatus.OCCUPIED.value:
                    raise InvalidTransitionError(
                        "Cannot delete an occupied pod",
                        entity="pod",
                        pod_id=pod_id,
                        current_status=pod.status,
                    )
                await db.delete(pod)

        logger.info("pod_deleted", pod_id=pod_id)

    async def delete_pods(
        self, db: AsyncSession, cluster_id: str, codes: Sequence[str]
    ) -> int:
        """
        Delete pods of a cluster by code, all or nothing.

        Raises:
            InvalidTransitionError: If any matching pod is OCCUPIED
        """
        wanted = {normalize_pod_code(c) for c in codes}
        result = await db.execute(
            select(Pod.id).where(Pod.cluster_id == cluster_id, Pod.code.in_(wanted))
        )
        pod_ids = sorted(result.scalars().all())
        if not pod_ids:
            return 0

        async with self._hold_many([pod_lock_key(pid) for pid in pod_ids]):
            async with transaction(db):
                pods = [await self.load_for_update(db, pid) for pid in pod_ids]
                occupied = [p.code for p in pods if p.status == PodStatus.OCCUPIED.value]
                if occupied:
                    raise InvalidTransitionError(
                        "Cannot delete occupied pods",
                        entity="pod",
                        cluster_id=cluster_id,
                        codes=occupied,
                    )
                for pod in pods:
                    await db.delete(pod)

        logger.info("pods_deleted", cluster_id=cluster_id, count=len(pod_ids))
        return len(pod_ids)

    @asynccontextmanager
    async def _hold_many(self, keys: List[str]) -> AsyncIterator[None]:
        """Hold several pod locks, always acquired in sorted key order."""
        async with AsyncExitStack() as stack:
            for key in sorted(keys):
                await stack.enter_async_context(self.lock_manager.hold(key))
            yield

    # State machine

    def apply_transition(
        self, pod: Pod, action: PodAction, reason: Optional[str] = None
    ) -> PodStatus:
        """
        Apply ``action`` to an already-locked pod inside the caller's transaction.

        Returns:
            PodStatus: The new status

        Raises:
            InvalidTransitionError: If the state machine rejects the action
        """
        previous = pod.status
        try:
            new_status = next_pod_status(
                previous,
                action,
                require_cleaning=self.settings.require_cleaning_after_maintenance,
            )
        except InvalidTransitionError:
            metrics.record_pod_transition_rejected(action.value, previous)
            logger.warning(
                "pod_transition_rejected", pod_id=pod.id, action=action.value, status=previous
            )
            raise

        pod.status = new_status.value
        if action in (PodAction.ENTER_MAINTENANCE, PodAction.FORCE_OUT_OF_SERVICE):
            pod.maintenance_reason = reason
        elif action == PodAction.EXIT_MAINTENANCE:
            pod.maintenance_reason = None
        elif action == PodAction.COMPLETE_CLEANING:
            pod.last_cleaned_at = utcnow()

        metrics.record_pod_transition(action.value, previous, new_status.value)
        logger.info(
            "pod_transitioned",
            pod_id=pod.id,
            action=action.value,
            from_status=previous,
            to_status=new_status.value,
        )
        return new_status

    async def transition(
        self,
        db: AsyncSession,
        pod_id: str,
        action: PodAction,
        reason: Optional[str] = None,
    ) -> Pod:
        """Lock, load, apply ``action`` and commit."""
        async with self.lock_manager.hold(pod_lock_key(pod_id)):
            async with transaction(db):
                pod = await self.load_for_update(db, pod_id)
                self.apply_transition(pod, action, reason)
        return pod

    async def reserve(self, db: AsyncSession, pod_id: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.RESERVE)

    async def release(self, db: AsyncSession, pod_id: str, to_cleaning: bool = True) -> Pod:
        """OCCUPIED -> NEEDS_CLEANING, or straight to AVAILABLE when to_cleaning is False."""
        action = PodAction.RELEASE_TO_CLEANING if to_cleaning else PodAction.RELEASE_TO_AVAILABLE
        return await self.transition(db, pod_id, action)

    async def start_cleaning(self, db: AsyncSession, pod_id: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.START_CLEANING)

    async def complete_cleaning(self, db: AsyncSession, pod_id: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.COMPLETE_CLEANING)

    async def enter_maintenance(self, db: AsyncSession, pod_id: str, reason: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.ENTER_MAINTENANCE, reason)

    async def force_out_of_service(self, db: AsyncSession, pod_id: str, reason: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.FORCE_OUT_OF_SERVICE, reason)

    async def exit_maintenance(self, db: AsyncSession, pod_id: str) -> Pod:
        return await self.transition(db, pod_id, PodAction.EXIT_MAINTENANCE)
