from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Callable, Iterator

from .config import (
    POD_MODE_DELETE,
    POD_MODE_EXEC,
    POD_MODE_RUN_FROM_PVC,
    POD_MODE_RUN_FROM_SNAPSHOT,
    POD_MODE_SMOKE_TEST,
    PVC_MODE_CREATE,
    PVC_MODE_DELETE,
    PVC_MODE_GET,
    PVC_MODE_PVC_FROM_SNAPSHOT,
    PVC_MODE_SNAPSHOT_FROM_PVC,
    AppConfig,
    ConfigurationError,
    validate_mode,
)
from .k8s import KubernetesOperationError, OperationCancelledError, WaitTimeoutError
from .models import ResourceHandle
from .pods import PodManager, with_command, with_image, with_pvc
from .pvcs import PVCManager, with_restore_from_volume_snapshot, with_storage_class_name, with_storage_request

logger = logging.getLogger(__name__)


class WorkflowStepError(RuntimeError):
    def __init__(self, *, step: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{step} failed: {normalized_reason}")
        self.step = step


@contextmanager
def _step(step: str) -> Iterator[None]:
    try:
        yield
    except (KubernetesOperationError, WaitTimeoutError, OperationCancelledError) as error:
        raise WorkflowStepError(step=step, reason=str(error)) from error


class WorkflowRunner:
    """Runs one named workflow per invocation.

    Steps run strictly in order and are never retried or rolled back: when a
    later step fails, objects created by earlier steps stay in the cluster and
    the raised ``WorkflowStepError`` names the step that failed.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        pods: PodManager,
        pvcs: PVCManager,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.pods = pods
        self.pvcs = pvcs
        self.cancel_event = cancel_event or threading.Event()

    def handle_pod_command(self) -> list[ResourceHandle]:
        handlers: dict[str, Callable[[], list[ResourceHandle]]] = {
            POD_MODE_RUN_FROM_PVC: self.run_pod_from_pvc,
            POD_MODE_RUN_FROM_SNAPSHOT: self.run_pod_from_snapshot,
            POD_MODE_EXEC: self.exec_in_pod,
            POD_MODE_DELETE: self.delete_pod,
            POD_MODE_SMOKE_TEST: self.run_smoke_test,
        }
        return _dispatch("pod", self.config.pod.mode, handlers)

    def handle_pvc_command(self) -> list[ResourceHandle]:
        handlers: dict[str, Callable[[], list[ResourceHandle]]] = {
            PVC_MODE_CREATE: self.create_pvc,
            PVC_MODE_GET: self.get_pvc,
            PVC_MODE_DELETE: self.delete_pvc,
            PVC_MODE_SNAPSHOT_FROM_PVC: self.create_snapshot_from_pvc,
            PVC_MODE_PVC_FROM_SNAPSHOT: self.create_pvc_from_snapshot,
        }
        return _dispatch("pvc", self.config.pvc.mode, handlers)

    def run_pod_from_pvc(self) -> list[ResourceHandle]:
        namespace = self.config.namespace
        settings = self.config.pod
        with _step("pod create"):
            pod = self.pods.create(
                namespace,
                settings.name,
                *self._pod_options(settings.pvc_name),
            )

        # A pod left Pending by a timeout is not cleaned up here.
        with _step("pod wait ready"):
            self.pods.wait_ready(
                pod.namespace,
                pod.name,
                settings.ready_timeout_seconds,
                cancel_event=self.cancel_event,
            )

        logger.info("pod successfully created name=%s time=%s", pod.name, pod.creation_timestamp)
        return [pod]

    def run_pod_from_snapshot(self) -> list[ResourceHandle]:
        namespace = self.config.namespace
        settings = self.config.pod
        with _step("pvc create"):
            pvc = self.pvcs.create(
                namespace,
                self.config.pvc.name,
                with_restore_from_volume_snapshot(settings.snapshot_name),
            )
        logger.info("pvc created name=%s time=%s", pvc.name, pvc.creation_timestamp)

        with _step("pod create"):
            pod = self.pods.create(namespace, settings.name, *self._pod_options(pvc.name))
        logger.info("pod created name=%s time=%s", pod.name, pod.creation_timestamp)

        if settings.wait_after_restore:
            with _step("pod wait ready"):
                self.pods.wait_ready(
                    pod.namespace,
                    pod.name,
                    settings.ready_timeout_seconds,
                    cancel_event=self.cancel_event,
                )
        return [pvc, pod]

    def exec_in_pod(self) -> list[ResourceHandle]:
        settings = self.config.pod
        with _step("pod exec"):
            self.pods.exec_interactive(
                self.config.namespace,
                settings.name,
                settings.exec_command,
                cancel_event=self.cancel_event,
            )
        return []

    def delete_pod(self) -> list[ResourceHandle]:
        self._delete_pod_and_wait(self.config.namespace, self.config.pod.name)
        return []

    def run_smoke_test(self) -> list[ResourceHandle]:
        """Round-trip a PVC and a pod that mounts it, listing the mount on the way."""
        namespace = self.config.namespace
        settings = self.config.pod
        with _step("pvc create"):
            pvc = self.pvcs.create(namespace, self.config.pvc.name, *self._pvc_options())
        logger.info("pvc created name=%s", pvc.name)

        with _step("pod create"):
            pod = self.pods.create(namespace, settings.name, *self._pod_options(pvc.name))
        logger.info("pod created name=%s time=%s", pod.name, pod.creation_timestamp)

        with _step("pod wait ready"):
            self.pods.wait_ready(
                pod.namespace,
                pod.name,
                settings.ready_timeout_seconds,
                cancel_event=self.cancel_event,
            )
        with _step("pod exec"):
            self.pods.exec_interactive(
                pod.namespace,
                pod.name,
                ["ls", "-lah", settings.mount_path],
                cancel_event=self.cancel_event,
            )
        self._delete_pod_and_wait(pod.namespace, pod.name)

        with _step("pvc delete"):
            self.pvcs.delete(pvc.namespace, pvc.name)
        logger.info("pvc deleted name=%s", pvc.name)
        return [pvc, pod]

    def create_pvc(self) -> list[ResourceHandle]:
        with _step("pvc create"):
            pvc = self.pvcs.create(self.config.namespace, self.config.pvc.name, *self._pvc_options())
        logger.info("pvc created name=%s time=%s", pvc.name, pvc.creation_timestamp)
        return [pvc]

    def get_pvc(self) -> list[ResourceHandle]:
        with _step("pvc get"):
            pvc = self.pvcs.get(self.config.namespace, self.config.pvc.name)
        logger.info("pvc found name=%s phase=%s time=%s", pvc.name, pvc.phase, pvc.creation_timestamp)
        return [pvc]

    def delete_pvc(self) -> list[ResourceHandle]:
        with _step("pvc delete"):
            self.pvcs.delete(self.config.namespace, self.config.pvc.name)
        logger.info("pvc deleted name=%s", self.config.pvc.name)
        return []

    def create_snapshot_from_pvc(self) -> list[ResourceHandle]:
        settings = self.config.pvc
        if not settings.source_pvc_name.strip():
            raise ConfigurationError("pvc.source_pvc_name is required for mode 'snapshot-from-pvc'.")
        with _step("pvc snapshot"):
            snapshot = self.pvcs.create_volume_snapshot_from_pvc(
                self.config.namespace,
                settings.snapshot_name,
                settings.snapshot_class_name,
                settings.source_pvc_name,
            )
        logger.info("pvc snapshot name=%s time=%s", snapshot.name, snapshot.creation_timestamp)
        return [snapshot]

    def create_pvc_from_snapshot(self) -> list[ResourceHandle]:
        settings = self.config.pvc
        with _step("pvc create"):
            pvc = self.pvcs.create(
                self.config.namespace,
                settings.name,
                with_restore_from_volume_snapshot(settings.snapshot_name),
            )
        logger.info("pvc created name=%s time=%s", pvc.name, pvc.creation_timestamp)
        return [pvc]

    def _delete_pod_and_wait(self, namespace: str, name: str) -> None:
        # The watch opens before the delete is sent so a fast removal still emits DELETED.
        def delete() -> None:
            with _step("pod delete"):
                self.pods.delete(namespace, name)

        with _step("pod wait deleted"):
            self.pods.wait_deleted(
                namespace,
                name,
                self.config.pod.delete_timeout_seconds,
                cancel_event=self.cancel_event,
                on_watching=delete,
            )
        logger.info("pod deleted name=%s", name)

    def _pod_options(self, pvc_name: str) -> list:
        settings = self.config.pod
        return [
            with_image(settings.image),
            with_command(settings.command),
            with_pvc(settings.volume_name, settings.mount_path, pvc_name),
        ]

    def _pvc_options(self) -> list:
        settings = self.config.pvc
        options = [with_storage_request(settings.storage_request)]
        if settings.storage_class_name:
            options.append(with_storage_class_name(settings.storage_class_name))
        return options


def _dispatch(kind: str, mode: str, handlers: dict[str, Callable[[], list[ResourceHandle]]]) -> list[ResourceHandle]:
    return handlers[validate_mode(kind, mode)]()
