from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

DEFAULT_CONTAINER_NAME = "netshoot"
DEFAULT_POD_IMAGE = "ghcr.io/nicolaka/netshoot:v0.14"
DEFAULT_POD_COMMAND: tuple[str, ...] = ("tail", "-f", "/dev/null")
DEFAULT_ACCESS_MODES: tuple[str, ...] = ("ReadWriteOnce",)
DEFAULT_STORAGE_REQUEST = "5Gi"

SNAPSHOT_API_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_KIND = "VolumeSnapshot"

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"
EVENT_ERROR = "ERROR"

POD_PHASE_RUNNING = "Running"


@dataclass(frozen=True)
class VolumeAttachment:
    volume_name: str
    mount_path: str
    pvc_name: str


@dataclass(frozen=True)
class PodSpecRequest:
    namespace: str
    name: str
    image: str = DEFAULT_POD_IMAGE
    command: tuple[str, ...] = DEFAULT_POD_COMMAND
    container_name: str = DEFAULT_CONTAINER_NAME
    volume: VolumeAttachment | None = None
    labels: Mapping[str, str] = field(default_factory=dict)
    annotations: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotSource:
    name: str
    kind: str = SNAPSHOT_KIND
    api_group: str = SNAPSHOT_API_GROUP


@dataclass(frozen=True)
class PVCSpecRequest:
    namespace: str
    name: str
    access_modes: tuple[str, ...] = DEFAULT_ACCESS_MODES
    storage_request: str = DEFAULT_STORAGE_REQUEST
    storage_class_name: str | None = None
    data_source: SnapshotSource | None = None


@dataclass(frozen=True)
class SnapshotRequest:
    namespace: str
    generated_name_prefix: str
    source_pvc_name: str
    snapshot_class_name: str | None = None


@dataclass(frozen=True)
class ResourceHandle:
    """Identity and status of a Pod, PVC or VolumeSnapshot as reported by the cluster."""

    kind: str
    namespace: str
    name: str
    creation_timestamp: str | None
    phase: str


@dataclass(frozen=True)
class WatchEvent:
    type: str
    resource: ResourceHandle


class WaitCondition(str, Enum):
    POD_RUNNING = "PodRunning"
    POD_DELETED = "PodDeleted"

    def matches(self, event: WatchEvent) -> bool:
        if self is WaitCondition.POD_RUNNING:
            return event.type in {EVENT_ADDED, EVENT_MODIFIED} and event.resource.phase == POD_PHASE_RUNNING
        return event.type == EVENT_DELETED
