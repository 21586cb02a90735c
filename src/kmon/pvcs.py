from __future__ import annotations

from dataclasses import replace
import logging
from typing import Callable, Sequence

from .k8s import CoreResourceClient, SnapshotResourceClient
from .models import PVCSpecRequest, ResourceHandle, SnapshotRequest, SnapshotSource

logger = logging.getLogger(__name__)

PVCOption = Callable[[PVCSpecRequest], PVCSpecRequest]


def with_storage_class_name(storage_class_name: str) -> PVCOption:
    return lambda request: replace(request, storage_class_name=storage_class_name)


def with_restore_from_volume_snapshot(snapshot_name: str) -> PVCOption:
    return lambda request: replace(request, data_source=SnapshotSource(name=snapshot_name))


def with_storage_request(storage_request: str) -> PVCOption:
    return lambda request: replace(request, storage_request=storage_request)


def with_access_modes(access_modes: Sequence[str]) -> PVCOption:
    return lambda request: replace(request, access_modes=tuple(access_modes))


def build_pvc_request(namespace: str, name: str, *options: PVCOption) -> PVCSpecRequest:
    request = PVCSpecRequest(namespace=namespace, name=name)
    for option in options:
        request = option(request)
    return request


class PVCManager:
    """Creates, reads and deletes PVCs, and snapshots them.

    Core resources and snapshots are served by separate clients.
    """

    def __init__(
        self,
        *,
        core: CoreResourceClient,
        snapshots: SnapshotResourceClient,
    ) -> None:
        self.core = core
        self.snapshots = snapshots

    def create(self, namespace: str, name: str, *options: PVCOption) -> ResourceHandle:
        logger.info("creating pvc namespace=%s name=%s", namespace, name)
        return self.core.create_pvc(build_pvc_request(namespace, name, *options))

    def get(self, namespace: str, name: str) -> ResourceHandle:
        logger.info("getting pvc namespace=%s name=%s", namespace, name)
        return self.core.get_pvc(namespace, name)

    def delete(self, namespace: str, name: str) -> None:
        logger.info("deleting pvc namespace=%s name=%s", namespace, name)
        self.core.delete_pvc(namespace, name)

    def create_volume_snapshot_from_pvc(
        self,
        namespace: str,
        name: str,
        snapshot_class_name: str | None,
        source_pvc_name: str,
    ) -> ResourceHandle:
        """Snapshot ``source_pvc_name``.

        ``name`` is only a prefix: the cluster appends a unique suffix, so callers
        must read the name from the returned handle. An empty class name selects
        the cluster's default VolumeSnapshotClass.
        """
        logger.info(
            "creating volume snapshot namespace=%s prefix=%s source_pvc=%s",
            namespace,
            name,
            source_pvc_name,
        )
        return self.snapshots.create_snapshot(
            SnapshotRequest(
                namespace=namespace,
                generated_name_prefix=name,
                source_pvc_name=source_pvc_name,
                snapshot_class_name=snapshot_class_name or None,
            )
        )
