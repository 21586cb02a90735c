from __future__ import annotations

from dataclasses import replace
import logging
import sys
import threading
from typing import BinaryIO, Callable, Mapping, Sequence

from .k8s import CoreResourceClient, KubernetesOperationError, WatchFailedError
from .models import (
    PodSpecRequest,
    ResourceHandle,
    VolumeAttachment,
    WaitCondition,
    WatchEvent,
)
from .waiting import wait_for_event

logger = logging.getLogger(__name__)

PodOption = Callable[[PodSpecRequest], PodSpecRequest]


def with_labels(labels: Mapping[str, str]) -> PodOption:
    return lambda request: replace(request, labels=dict(labels))


def with_annotations(annotations: Mapping[str, str]) -> PodOption:
    return lambda request: replace(request, annotations=dict(annotations))


def with_pvc(volume_name: str, mount_path: str, pvc_name: str) -> PodOption:
    """Mount ``pvc_name`` at ``mount_path`` in the first container under ``volume_name``."""
    attachment = VolumeAttachment(volume_name=volume_name, mount_path=mount_path, pvc_name=pvc_name)
    return lambda request: replace(request, volume=attachment)


def with_image(image: str) -> PodOption:
    return lambda request: replace(request, image=image)


def with_command(command: Sequence[str]) -> PodOption:
    return lambda request: replace(request, command=tuple(command))


def build_pod_request(namespace: str, name: str, *options: PodOption) -> PodSpecRequest:
    request = PodSpecRequest(namespace=namespace, name=name)
    for option in options:
        request = option(request)
    return request


class PodManager:
    def __init__(self, *, core: CoreResourceClient) -> None:
        self.core = core

    def create(self, namespace: str, name: str, *options: PodOption) -> ResourceHandle:
        """Create a pod; without options it runs an idle netshoot container."""
        logger.info("creating pod namespace=%s name=%s", namespace, name)
        return self.core.create_pod(build_pod_request(namespace, name, *options))

    def delete(self, namespace: str, name: str) -> None:
        logger.info("deleting pod namespace=%s name=%s", namespace, name)
        self.core.delete_pod(namespace, name)

    def wait_ready(
        self,
        namespace: str,
        name: str,
        timeout_seconds: int,
        *,
        cancel_event: threading.Event | None = None,
    ) -> WatchEvent:
        logger.info("waiting for pod to become ready namespace=%s name=%s", namespace, name)
        return self._wait_for(
            WaitCondition.POD_RUNNING,
            namespace,
            name,
            timeout_seconds,
            description="pod to become running",
            cancel_event=cancel_event,
        )

    def wait_deleted(
        self,
        namespace: str,
        name: str,
        timeout_seconds: int,
        *,
        cancel_event: threading.Event | None = None,
        on_watching: Callable[[], None] | None = None,
    ) -> WatchEvent:
        """Wait for the DELETED event; ``on_watching`` runs once the watch is open."""
        logger.info("waiting for pod to be deleted namespace=%s name=%s", namespace, name)
        return self._wait_for(
            WaitCondition.POD_DELETED,
            namespace,
            name,
            timeout_seconds,
            description="pod to be deleted",
            cancel_event=cancel_event,
            on_watching=on_watching,
        )

    def exec_interactive(
        self,
        namespace: str,
        name: str,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        logger.info("executing in pod namespace=%s name=%s command=%s", namespace, name, " ".join(command))
        self.core.exec_in_pod(
            namespace,
            name,
            command,
            stdin=stdin if stdin is not None else sys.stdin.buffer,
            stdout=stdout if stdout is not None else sys.stdout.buffer,
            stderr=stderr if stderr is not None else sys.stderr.buffer,
            tty=True,
            cancel_event=cancel_event,
        )

    def _wait_for(
        self,
        condition: WaitCondition,
        namespace: str,
        name: str,
        timeout_seconds: int,
        *,
        description: str,
        cancel_event: threading.Event | None,
        on_watching: Callable[[], None] | None = None,
    ) -> WatchEvent:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        try:
            subscription = self.core.watch_pod(namespace, name, timeout_seconds)
        except KubernetesOperationError as error:
            raise WatchFailedError(
                operation="watch pod",
                namespace=namespace,
                name=name,
                reason=f"could not watch pod: {error.reason}",
                status=error.status,
            ) from error
        if on_watching is not None:
            try:
                on_watching()
            except BaseException:
                subscription.close()
                raise

        return wait_for_event(
            subscription,
            condition.matches,
            timeout_seconds=timeout_seconds,
            namespace=namespace,
            name=name,
            description=description,
            cancel_event=cancel_event,
        )
