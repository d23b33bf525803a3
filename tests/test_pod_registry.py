"""
Tests for cluster/pod management and guarded pod status changes.
"""
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pod_booking.core.pod_registry import PodRegistry
from pod_booking.database.models import Pod, PodCluster
from pod_booking.domain.errors import (
    DuplicateCodeError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from pod_booking.domain.states import PodStatus

from conftest import codes_of


class TestClusters:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cluster_names_unique_per_location(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        cluster_id, location_id, name = cluster.id, cluster.location_id, cluster.name

        with pytest.raises(DuplicateCodeError):
            await pod_registry.create_cluster(test_db, location_id, name)

        other = await pod_registry.create_cluster(test_db, "loc-hn-02", name)
        assert other.id != cluster_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_clusters_by_location(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        await pod_registry.create_cluster(test_db, "loc-hn-02", "Lobby")

        clusters = await pod_registry.list_clusters(test_db, location_id=cluster.location_id)

        assert [c.id for c in clusters] == [cluster.id]


class TestPodCreation:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_grid_creates_two_levels_per_cell(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        pods = await pod_registry.create_pods(test_db, cluster.id, num_rows=2, num_cols=2)

        assert codes_of(pods) == [
            "A01L", "A01U", "A02L", "A02U", "B01L", "B01U", "B02L", "B02U",
        ]
        assert all(p.status == PodStatus.AVAILABLE.value for p in pods)
        assert pods[0].name == "Pod A01L"
        assert pods[-1].description == "Grid pod at row 2, col 2, upper level"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_pod_code_is_normalized(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        pods = await pod_registry.create_pods(
            test_db, cluster.id, code=" vip01 ", name="VIP", soundproof_level=5
        )

        assert codes_of(pods) == ["VIP01"]
        assert pods[0].soundproof_level == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_grid_overlapping_existing_codes_creates_nothing(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        cluster_id = cluster.id
        await pod_registry.create_pods(test_db, cluster_id, code="B02L", name="Pod B02L")

        with pytest.raises(DuplicateCodeError) as exc_info:
            await pod_registry.create_pods(test_db, cluster_id, num_rows=2, num_cols=2)

        assert exc_info.value.context["codes"] == ["B02L"]
        remaining = await pod_registry.list_pods(test_db, cluster_id=cluster_id)
        assert codes_of(remaining) == ["B02L"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_code_allowed_in_another_cluster(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        other = await pod_registry.create_cluster(test_db, cluster.location_id, "Floor 4")
        await pod_registry.create_pods(test_db, cluster.id, code="A01L", name="x")

        pods = await pod_registry.create_pods(test_db, other.id, code="A01L", name="x")

        assert pods[0].cluster_id == other.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"num_rows": 11, "num_cols": 1},
            {"num_rows": 1, "num_cols": 21},
            {"num_rows": 0, "num_cols": 3},
            {"code": "X1"},
            {"code": "X1", "name": "x", "soundproof_level": 6},
            {"code": "X1", "name": "x", "max_session_duration": 30},
        ],
    )
    async def test_invalid_requests_rejected(
        self,
        test_db: AsyncSession,
        pod_registry: PodRegistry,
        cluster: PodCluster,
        kwargs: dict,
    ) -> None:
        with pytest.raises(ValidationError):
            await pod_registry.create_pods(test_db, cluster.id, **kwargs)

        result = await test_db.execute(select(Pod))
        assert result.scalars().all() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_pod_ceiling(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        # 10 x 20 cells x 2 levels = 400 > 200
        with pytest.raises(ValidationError):
            await pod_registry.create_pods(test_db, cluster.id, num_rows=10, num_cols=20)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_cluster(self, test_db: AsyncSession, pod_registry: PodRegistry) -> None:
        with pytest.raises(NotFoundError):
            await pod_registry.create_pods(test_db, "missing", code="A", name="a")


class TestPodUpdatesAndDeletes:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_attributes(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        updated = await pod_registry.update_pod(
            test_db, pod.id, name="Quiet pod", ventilation_level=5, wifi_available=False
        )

        assert updated.name == "Quiet pod"
        assert updated.ventilation_level == 5
        assert updated.wifi_available is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_is_not_directly_updatable(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        with pytest.raises(ValidationError):
            await pod_registry.update_pod(test_db, pod.id, status=PodStatus.CLEANING.value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_code_change_checks_uniqueness(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster, pod: Pod
    ) -> None:
        await pod_registry.create_pods(test_db, cluster.id, code="P02", name="Pod P02")

        with pytest.raises(DuplicateCodeError):
            await pod_registry.update_pod(test_db, pod.id, code="p02")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_occupied_pod_cannot_be_deleted(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        pod_id = pod.id
        await pod_registry.reserve(test_db, pod_id)

        with pytest.raises(InvalidTransitionError):
            await pod_registry.delete_pod(test_db, pod_id)

        assert (await pod_registry.get_pod(test_db, pod_id)).status == PodStatus.OCCUPIED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_delete_is_all_or_nothing(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        cluster_id = cluster.id
        pods = await pod_registry.create_pods(test_db, cluster_id, num_rows=1, num_cols=2)
        await pod_registry.reserve(test_db, pods[0].id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await pod_registry.delete_pods(test_db, cluster_id, ["A01L", "A01U"])
        assert exc_info.value.context["codes"] == ["A01L"]
        assert len(await pod_registry.list_pods(test_db, cluster_id=cluster_id)) == 4

        deleted = await pod_registry.delete_pods(test_db, cluster_id, ["a02l", "A02U", "Z99L"])
        assert deleted == 2
        remaining = await pod_registry.list_pods(test_db, cluster_id=cluster_id)
        assert codes_of(remaining) == ["A01L", "A01U"]


class TestPodTransitions:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleaning_cycle(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        await pod_registry.reserve(test_db, pod.id)
        await pod_registry.release(test_db, pod.id)
        assert (await pod_registry.get_pod(test_db, pod.id)).status == "NEEDS_CLEANING"

        await pod_registry.start_cleaning(test_db, pod.id)
        cleaned = await pod_registry.complete_cleaning(test_db, pod.id)

        assert cleaned.status == PodStatus.AVAILABLE.value
        assert cleaned.last_cleaned_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_maintenance_records_and_clears_reason(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        in_maintenance = await pod_registry.enter_maintenance(test_db, pod.id, "Broken fan")
        assert in_maintenance.status == PodStatus.MAINTENANCE.value
        assert in_maintenance.maintenance_reason == "Broken fan"

        restored = await pod_registry.exit_maintenance(test_db, pod.id)
        assert restored.status == PodStatus.AVAILABLE.value
        assert restored.maintenance_reason is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exit_maintenance_through_cleaning_when_configured(
        self, test_db: AsyncSession, lock_manager, test_settings, pod: Pod
    ) -> None:
        settings = test_settings.model_copy(update={"require_cleaning_after_maintenance": True})
        registry = PodRegistry(lock_manager=lock_manager, settings=settings)

        await registry.force_out_of_service(test_db, pod.id, "Water leak")
        restored = await registry.exit_maintenance(test_db, pod.id)

        assert restored.status == PodStatus.NEEDS_CLEANING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_transition_leaves_pod_unchanged(
        self, test_db: AsyncSession, pod_registry: PodRegistry, pod: Pod
    ) -> None:
        pod_id = pod.id
        with pytest.raises(InvalidTransitionError):
            await pod_registry.start_cleaning(test_db, pod_id)

        assert (await pod_registry.get_pod(test_db, pod_id)).status == PodStatus.AVAILABLE.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_filters(
        self, test_db: AsyncSession, pod_registry: PodRegistry, cluster: PodCluster
    ) -> None:
        pods = await pod_registry.create_pods(test_db, cluster.id, num_rows=1, num_cols=2)
        await pod_registry.enter_maintenance(test_db, pods[1].id, "Inspection")

        in_maintenance = await pod_registry.list_pods(test_db, status=PodStatus.MAINTENANCE)
        a02 = await pod_registry.list_pods(test_db, cluster_id=cluster.id, code="a02")

        assert codes_of(in_maintenance) == ["A01U"]
        assert codes_of(a02) == ["A02L", "A02U"]
