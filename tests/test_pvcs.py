from __future__ import annotations

import pytest

from fakes import FakeCluster
from kmon.k8s import ResourceAlreadyExistsError, ResourceInvalidError, ResourceNotFoundError
from kmon.models import SNAPSHOT_API_GROUP, SNAPSHOT_KIND
from kmon.pvcs import (
    PVCManager,
    build_pvc_request,
    with_access_modes,
    with_restore_from_volume_snapshot,
    with_storage_class_name,
    with_storage_request,
)


def test_build_pvc_request_defaults_to_read_write_once_and_five_gi() -> None:
    request = build_pvc_request("default", "kmon-pvc")

    assert request.access_modes == ("ReadWriteOnce",)
    assert request.storage_request == "5Gi"
    assert request.storage_class_name is None
    assert request.data_source is None


def test_build_pvc_request_composes_storage_class_and_restore_options() -> None:
    request = build_pvc_request(
        "apps",
        "restored",
        with_storage_class_name("fast"),
        with_restore_from_volume_snapshot("nightly"),
        with_storage_request("10Gi"),
        with_access_modes(["ReadWriteMany"]),
    )

    assert request.storage_class_name == "fast"
    assert request.data_source is not None
    assert request.data_source.kind == SNAPSHOT_KIND
    assert request.data_source.api_group == SNAPSHOT_API_GROUP
    assert request.data_source.name == "nightly"
    assert request.storage_request == "10Gi"
    assert request.access_modes == ("ReadWriteMany",)


def test_create_twice_with_same_name_raises_already_exists(pvc_manager: PVCManager) -> None:
    pvc_manager.create("default", "kmon-pvc")

    with pytest.raises(ResourceAlreadyExistsError, match="create pvc default/kmon-pvc failed"):
        pvc_manager.create("default", "kmon-pvc")


def test_create_same_name_in_other_namespace_succeeds(pvc_manager: PVCManager) -> None:
    pvc_manager.create("default", "kmon-pvc")

    handle = pvc_manager.create("staging", "kmon-pvc")

    assert handle.namespace == "staging"


def test_get_existing_pvc_returns_handle(pvc_manager: PVCManager) -> None:
    pvc_manager.create("default", "kmon-pvc")

    handle = pvc_manager.get("default", "kmon-pvc")

    assert handle.name == "kmon-pvc"
    assert handle.phase == "Bound"


def test_get_missing_pvc_raises_not_found(pvc_manager: PVCManager) -> None:
    with pytest.raises(ResourceNotFoundError, match="get pvc default/missing failed"):
        pvc_manager.get("default", "missing")


def test_delete_removes_pvc(fake_cluster: FakeCluster, pvc_manager: PVCManager) -> None:
    pvc_manager.create("default", "kmon-pvc")

    pvc_manager.delete("default", "kmon-pvc")

    assert fake_cluster.pvcs == {}
    with pytest.raises(ResourceNotFoundError):
        pvc_manager.delete("default", "kmon-pvc")


def test_create_volume_snapshot_uses_requested_name_as_generated_prefix(
    fake_cluster: FakeCluster,
    pvc_manager: PVCManager,
) -> None:
    handle = pvc_manager.create_volume_snapshot_from_pvc("default", "backup", "csi-snapclass", "db-data")

    assert handle.name.startswith("backup-")
    assert handle.name != "backup"
    request = fake_cluster.calls[0][1]
    assert request.generated_name_prefix == "backup"
    assert request.source_pvc_name == "db-data"
    assert request.snapshot_class_name == "csi-snapclass"


def test_create_volume_snapshot_twice_yields_distinct_names(pvc_manager: PVCManager) -> None:
    first = pvc_manager.create_volume_snapshot_from_pvc("default", "backup", "", "db-data")
    second = pvc_manager.create_volume_snapshot_from_pvc("default", "backup", "", "db-data")

    assert first.name != second.name


def test_create_volume_snapshot_with_empty_class_defers_to_cluster_default(
    fake_cluster: FakeCluster,
    pvc_manager: PVCManager,
) -> None:
    pvc_manager.create_volume_snapshot_from_pvc("default", "backup", "", "db-data")

    assert fake_cluster.calls[0][1].snapshot_class_name is None


def test_create_volume_snapshot_with_invalid_rejection_surfaces_error(
    fake_cluster: FakeCluster,
    pvc_manager: PVCManager,
) -> None:
    fake_cluster.failures["create_snapshot"] = ResourceInvalidError(
        operation="create volumesnapshot",
        namespace="default",
        name="backup-*",
        reason="spec.source: Required value",
        status=422,
    )

    with pytest.raises(ResourceInvalidError, match="spec.source"):
        pvc_manager.create_volume_snapshot_from_pvc("default", "backup", "", "")


def test_pvc_manager_requires_snapshot_client(fake_cluster: FakeCluster) -> None:
    with pytest.raises(TypeError, match="snapshots"):
        PVCManager(core=fake_cluster)  # type: ignore[call-arg]

    assert fake_cluster.calls == []
