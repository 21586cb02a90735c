from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import json
import logging
import os
import select
import termios
import threading
import tty
from typing import Any, BinaryIO, Callable, Iterator, Protocol, Sequence, TypeVar

from kubernetes import client, config, watch
from kubernetes.client import ApiException
from kubernetes.stream import stream
from kubernetes.watch.watch import iter_resp_lines
from urllib3.exceptions import HTTPError

from .models import (
    EVENT_ERROR,
    PodSpecRequest,
    PVCSpecRequest,
    ResourceHandle,
    SnapshotRequest,
    WatchEvent,
)

logger = logging.getLogger(__name__)

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"
WATCH_SERVER_GRACE_SECONDS = 5
CANCEL_CHECK_INTERVAL_SECONDS = 0.5
STDIN_CHUNK_SIZE = 4096
UNKNOWN_PHASE = "Unknown"
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesOperationError(RuntimeError):
    """Raised when a call against the cluster fails for a single (namespace, name) target."""

    def __init__(
        self,
        *,
        operation: str,
        namespace: str,
        name: str,
        reason: str,
        status: int | None = None,
    ) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{operation} {namespace}/{name} failed: {normalized_reason}")
        self.operation = operation
        self.namespace = namespace
        self.name = name
        self.reason = normalized_reason
        self.status = status


class ResourceRejectedError(KubernetesOperationError):
    """The API server refused the request."""


class ResourceAlreadyExistsError(ResourceRejectedError):
    pass


class ResourceNotFoundError(ResourceRejectedError):
    pass


class ResourceInvalidError(ResourceRejectedError):
    pass


class ClusterUnreachableError(KubernetesOperationError):
    pass


class StreamFailedError(KubernetesOperationError):
    pass


class WatchFailedError(KubernetesOperationError):
    pass


class WaitTimeoutError(TimeoutError):
    """The resource exists but did not reach the awaited state in time."""


class OperationCancelledError(RuntimeError):
    pass


class CoreResourceClient(Protocol):
    def create_pod(self, request: PodSpecRequest) -> ResourceHandle: ...

    def delete_pod(self, namespace: str, name: str) -> None: ...

    def watch_pod(self, namespace: str, name: str, timeout_seconds: int) -> "EventSubscription": ...

    def exec_in_pod(
        self,
        namespace: str,
        name: str,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None,
        stdout: BinaryIO,
        stderr: BinaryIO,
        tty: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None: ...

    def create_pvc(self, request: PVCSpecRequest) -> ResourceHandle: ...

    def get_pvc(self, namespace: str, name: str) -> ResourceHandle: ...

    def delete_pvc(self, namespace: str, name: str) -> None: ...


class SnapshotResourceClient(Protocol):
    def create_snapshot(self, request: SnapshotRequest) -> ResourceHandle: ...


class EventSubscription(Protocol):
    def __iter__(self) -> Iterator[WatchEvent]: ...

    def close(self) -> None: ...


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def build_pod_body(request: PodSpecRequest) -> client.V1Pod:
    container = client.V1Container(
        name=request.container_name,
        image=request.image,
        command=list(request.command),
    )
    volumes = None
    if request.volume is not None:
        # Volume and mount share one name so the claim lands in the first container.
        container.volume_mounts = [
            client.V1VolumeMount(name=request.volume.volume_name, mount_path=request.volume.mount_path)
        ]
        volumes = [
            client.V1Volume(
                name=request.volume.volume_name,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=request.volume.pvc_name,
                ),
            )
        ]

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=request.name,
            namespace=request.namespace,
            labels=dict(request.labels) or None,
            annotations=dict(request.annotations) or None,
        ),
        spec=client.V1PodSpec(containers=[container], volumes=volumes),
    )


def build_pvc_body(request: PVCSpecRequest) -> client.V1PersistentVolumeClaim:
    data_source = None
    if request.data_source is not None:
        data_source = client.V1TypedLocalObjectReference(
            api_group=request.data_source.api_group,
            kind=request.data_source.kind,
            name=request.data_source.name,
        )

    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=request.name, namespace=request.namespace),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=list(request.access_modes),
            resources=client.V1VolumeResourceRequirements(requests={"storage": request.storage_request}),
            storage_class_name=request.storage_class_name,
            data_source=data_source,
        ),
    )


def build_snapshot_body(request: SnapshotRequest) -> dict[str, Any]:
    spec: dict[str, Any] = {"source": {"persistentVolumeClaimName": request.source_pvc_name}}
    if request.snapshot_class_name:
        spec["volumeSnapshotClassName"] = request.snapshot_class_name
    return {
        "apiVersion": f"{SNAPSHOT_GROUP}/{SNAPSHOT_VERSION}",
        "kind": "VolumeSnapshot",
        "metadata": {
            "generateName": f"{request.generated_name_prefix}-",
            "namespace": request.namespace,
        },
        "spec": spec,
    }


class PodWatch:
    """A field-selector scoped watch over one Pod, backed by a streaming HTTP response."""

    def __init__(self, response: Any, *, namespace: str, name: str) -> None:
        self._response = response
        self._namespace = namespace
        self._name = name
        self._decoder = watch.Watch()
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> PodWatch:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def __iter__(self) -> Iterator[WatchEvent]:
        for line in iter_resp_lines(self._response):
            if not line:
                continue
            raw_event = self._decoder.unmarshal_event(line, "V1Pod")
            event_type = raw_event.get("type", "")
            if event_type == EVENT_ERROR:
                raw_object = raw_event.get("raw_object") or {}
                raise WatchFailedError(
                    operation="watch pod",
                    namespace=self._namespace,
                    name=self._name,
                    reason=str(raw_object.get("message") or "watch returned an error event"),
                    status=raw_object.get("code"),
                )
            yield WatchEvent(type=event_type, resource=handle_from_object("Pod", raw_event["object"]))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # shutdown() unblocks a reader thread parked on the socket; close() alone does not.
        self._response.shutdown()
        self._response.close()
        self._response.release_conn()


class KubernetesCoreClient:
    def __init__(self, *, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def create_pod(self, request: PodSpecRequest) -> ResourceHandle:
        pod = _call_api(
            operation="create pod",
            namespace=request.namespace,
            name=request.name,
            func=lambda: self.core_api.create_namespaced_pod(
                namespace=request.namespace,
                body=build_pod_body(request),
            ),
        )
        return handle_from_object("Pod", pod)

    def delete_pod(self, namespace: str, name: str) -> None:
        _call_api(
            operation="delete pod",
            namespace=namespace,
            name=name,
            func=lambda: self.core_api.delete_namespaced_pod(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
            ),
        )

    def watch_pod(self, namespace: str, name: str, timeout_seconds: int) -> PodWatch:
        response = _call_api(
            operation="watch pod",
            namespace=namespace,
            name=name,
            func=lambda: self.core_api.list_namespaced_pod(
                namespace=namespace,
                field_selector=f"metadata.name={name}",
                watch=True,
                timeout_seconds=timeout_seconds + WATCH_SERVER_GRACE_SECONDS,
                _preload_content=False,
            ),
        )
        return PodWatch(response, namespace=namespace, name=name)

    def exec_in_pod(
        self,
        namespace: str,
        name: str,
        command: Sequence[str],
        *,
        stdin: BinaryIO | None,
        stdout: BinaryIO,
        stderr: BinaryIO,
        tty: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> None:
        try:
            channel = stream(
                self.core_api.connect_get_namespaced_pod_exec,
                name,
                namespace,
                command=list(command),
                stdin=stdin is not None,
                stdout=True,
                # A pseudo-terminal merges stderr into stdout.
                stderr=not tty,
                tty=tty,
                binary=True,
                _preload_content=False,
            )
        except (HTTPError, OSError) as error:
            raise ClusterUnreachableError(
                operation="exec in pod",
                namespace=namespace,
                name=name,
                reason=_error_message(error),
            ) from error
        except Exception as error:  # pylint: disable=broad-except
            raise StreamFailedError(
                operation="exec in pod",
                namespace=namespace,
                name=name,
                reason=_error_message(error),
                status=getattr(error, "status", None),
            ) from error

        try:
            with _raw_terminal(stdin if tty else None):
                _pump_exec_channel(
                    channel,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    cancel_event=cancel_event,
                    target=f"{namespace}/{name}",
                )
            return_code = channel.returncode
        except OperationCancelledError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise StreamFailedError(
                operation="exec in pod",
                namespace=namespace,
                name=name,
                reason=_error_message(error),
            ) from error
        finally:
            channel.close()

        if return_code:
            logger.warning("remote command exited non-zero namespace=%s name=%s code=%s", namespace, name, return_code)
        else:
            logger.info("remote command finished namespace=%s name=%s", namespace, name)

    def create_pvc(self, request: PVCSpecRequest) -> ResourceHandle:
        pvc = _call_api(
            operation="create pvc",
            namespace=request.namespace,
            name=request.name,
            func=lambda: self.core_api.create_namespaced_persistent_volume_claim(
                namespace=request.namespace,
                body=build_pvc_body(request),
            ),
        )
        return handle_from_object("PersistentVolumeClaim", pvc)

    def get_pvc(self, namespace: str, name: str) -> ResourceHandle:
        pvc = _call_api(
            operation="get pvc",
            namespace=namespace,
            name=name,
            func=lambda: self.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )
        return handle_from_object("PersistentVolumeClaim", pvc)

    def delete_pvc(self, namespace: str, name: str) -> None:
        _call_api(
            operation="delete pvc",
            namespace=namespace,
            name=name,
            func=lambda: self.core_api.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
            ),
        )


class KubernetesSnapshotClient:
    def __init__(self, *, custom_api: client.CustomObjectsApi) -> None:
        self.custom_api = custom_api

    def create_snapshot(self, request: SnapshotRequest) -> ResourceHandle:
        created = _call_api(
            operation="create volumesnapshot",
            namespace=request.namespace,
            name=f"{request.generated_name_prefix}-*",
            func=lambda: self.custom_api.create_namespaced_custom_object(
                SNAPSHOT_GROUP,
                SNAPSHOT_VERSION,
                request.namespace,
                SNAPSHOT_PLURAL,
                build_snapshot_body(request),
            ),
        )
        return handle_from_snapshot(created)


def handle_from_object(kind: str, obj: Any) -> ResourceHandle:
    metadata = obj.metadata
    status = obj.status
    return ResourceHandle(
        kind=kind,
        namespace=metadata.namespace or "",
        name=metadata.name or "",
        creation_timestamp=_format_timestamp(metadata.creation_timestamp),
        phase=status.phase if status and status.phase else UNKNOWN_PHASE,
    )


def handle_from_snapshot(body: dict[str, Any]) -> ResourceHandle:
    metadata = body.get("metadata") or {}
    status = body.get("status") or {}
    if status.get("readyToUse"):
        phase = "ReadyToUse"
    elif status.get("error"):
        phase = "Failed"
    else:
        phase = "Pending"
    return ResourceHandle(
        kind="VolumeSnapshot",
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        creation_timestamp=_format_timestamp(metadata.get("creationTimestamp")),
        phase=phase,
    )


def translate_api_error(
    error: Exception,
    *,
    operation: str,
    namespace: str,
    name: str,
) -> KubernetesOperationError:
    if not isinstance(error, ApiException):
        return ClusterUnreachableError(
            operation=operation,
            namespace=namespace,
            name=name,
            reason=_error_message(error),
        )

    status = error.status
    error_class: type[KubernetesOperationError]
    if status == 409:
        error_class = ResourceAlreadyExistsError
    elif status == 404:
        error_class = ResourceNotFoundError
    elif status in {400, 422}:
        error_class = ResourceInvalidError
    elif status is not None and 400 <= status < 500:
        error_class = ResourceRejectedError
    else:
        error_class = ClusterUnreachableError
    return error_class(
        operation=operation,
        namespace=namespace,
        name=name,
        reason=_api_error_reason(error),
        status=status,
    )


def _call_api(*, operation: str, namespace: str, name: str, func: Callable[[], T]) -> T:
    logger.debug("kubernetes call operation=%s namespace=%s name=%s", operation, namespace, name)
    try:
        return func()
    except (ApiException, HTTPError, OSError) as error:
        raise translate_api_error(error, operation=operation, namespace=namespace, name=name) from error


def _pump_exec_channel(
    channel: Any,
    *,
    stdin: BinaryIO | None,
    stdout: BinaryIO,
    stderr: BinaryIO,
    cancel_event: threading.Event | None,
    target: str,
) -> None:
    forward_stdin = stdin is not None
    while channel.is_open():
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"exec in pod {target} cancelled")
        channel.update(timeout=CANCEL_CHECK_INTERVAL_SECONDS)
        if channel.peek_stdout():
            _write_chunk(stdout, channel.read_stdout())
        if channel.peek_stderr():
            _write_chunk(stderr, channel.read_stderr())
        if forward_stdin and stdin is not None:
            data = _read_available(stdin)
            if data == b"":
                forward_stdin = False
            elif data:
                channel.write_stdin(data)


def _read_available(source: BinaryIO) -> bytes | None:
    fileno = source.fileno()
    readable, _, _ = select.select([fileno], [], [], 0)
    if not readable:
        return None
    return os.read(fileno, STDIN_CHUNK_SIZE)


def _write_chunk(target: BinaryIO, data: bytes | str) -> None:
    if not data:
        return
    target.write(data.encode("utf-8") if isinstance(data, str) else data)
    target.flush()


@contextmanager
def _raw_terminal(source: BinaryIO | None) -> Iterator[None]:
    if source is None or not source.isatty():
        yield
        return

    fileno = source.fileno()
    saved_attributes = termios.tcgetattr(fileno)
    tty.setraw(fileno)
    try:
        yield
    finally:
        termios.tcsetattr(fileno, termios.TCSADRAIN, saved_attributes)


def _api_error_reason(error: ApiException) -> str:
    body = error.body
    if body:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError):
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def _format_timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
