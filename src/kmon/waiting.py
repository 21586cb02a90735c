from __future__ import annotations

from dataclasses import dataclass
import logging
import queue
import threading
import time
from typing import Callable

from .k8s import (
    CANCEL_CHECK_INTERVAL_SECONDS,
    EventSubscription,
    KubernetesOperationError,
    OperationCancelledError,
    WaitTimeoutError,
    WatchFailedError,
)
from .models import WatchEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _StreamEnded:
    error: Exception | None = None


def wait_for_event(
    subscription: EventSubscription,
    predicate: Callable[[WatchEvent], bool],
    *,
    timeout_seconds: float,
    namespace: str,
    name: str,
    description: str,
    cancel_event: threading.Event | None = None,
) -> WatchEvent:
    """Block until ``predicate`` accepts an event from ``subscription`` or the deadline passes.

    Events are pumped on a daemon thread so the caller can race the next event against the
    deadline and the cancellation event. The subscription is closed on every exit path,
    which also unblocks the pump thread.
    """
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")

    events: queue.Queue[WatchEvent | _StreamEnded] = queue.Queue()
    pump = threading.Thread(
        target=_pump_events,
        args=(subscription, events),
        name=f"kmon-watch-{namespace}-{name}",
        daemon=True,
    )
    deadline = time.monotonic() + timeout_seconds
    pump.start()
    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError(f"waiting for {description} of {namespace}/{name} was cancelled")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WaitTimeoutError(
                    f"timeout waiting for {description} of {namespace}/{name} after {timeout_seconds}s"
                )

            try:
                item = events.get(timeout=min(remaining, CANCEL_CHECK_INTERVAL_SECONDS))
            except queue.Empty:
                continue

            if isinstance(item, _StreamEnded):
                raise _stream_failure(item, namespace=namespace, name=name, description=description)

            if predicate(item):
                return item
            logger.debug(
                "ignoring watch event type=%s phase=%s namespace=%s name=%s",
                item.type,
                item.resource.phase,
                namespace,
                name,
            )
    finally:
        subscription.close()


def _pump_events(
    subscription: EventSubscription,
    events: queue.Queue[WatchEvent | _StreamEnded],
) -> None:
    try:
        for event in subscription:
            events.put(event)
    except Exception as error:  # pylint: disable=broad-except
        events.put(_StreamEnded(error=error))
        return
    events.put(_StreamEnded())


def _stream_failure(ended: _StreamEnded, *, namespace: str, name: str, description: str) -> Exception:
    if isinstance(ended.error, KubernetesOperationError):
        return ended.error
    if ended.error is not None:
        failure = WatchFailedError(
            operation="watch pod",
            namespace=namespace,
            name=name,
            reason=str(ended.error).strip() or ended.error.__class__.__name__,
        )
        failure.__cause__ = ended.error
        return failure
    return WatchFailedError(
        operation="watch pod",
        namespace=namespace,
        name=name,
        reason=f"watch closed before {description} was observed",
    )
