from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import logging
import shlex
import signal
import sys
import threading
import time
from typing import Any, Callable, Iterator

import click

from .config import LOG_LEVELS, AppConfig, ConfigurationError, load_config, validate_mode
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesCoreClient,
    KubernetesSnapshotClient,
    load_kubernetes_clients,
)
from .pods import PodManager
from .pvcs import PVCManager
from .workflows import WorkflowRunner, WorkflowStepError

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

RunnerFactory = Callable[[AppConfig, threading.Event], WorkflowRunner]


def build_runner(config: AppConfig, cancel_event: threading.Event) -> WorkflowRunner:
    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.context,
        in_cluster=config.in_cluster,
    )
    core = KubernetesCoreClient(core_api=clients.core_api)
    snapshots = KubernetesSnapshotClient(custom_api=clients.custom_api)
    return WorkflowRunner(
        config=config,
        pods=PodManager(core=core),
        pvcs=PVCManager(core=core, snapshots=snapshots),
        cancel_event=cancel_event,
    )


@dataclass
class CLIContext:
    config_path: str | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    runner_factory: RunnerFactory = build_runner


@click.group(
    name="kmon",
    help=(
        "Automate common Kubernetes storage tasks: run a pod on a PVC, restore a PVC "
        "from a VolumeSnapshot, snapshot a PVC, or exec into a pod."
    ),
)
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), help="Path to a YAML config file.")
@click.option("-n", "--namespace", help="Namespace to run in (default: default).")
@click.option("--context", help="Kubeconfig context to use.")
@click.option("--kubeconfig", "kubeconfig_path", help="Path to the kubeconfig file.")
@click.option("--in-cluster/--no-in-cluster", default=None, help="Use the pod's service account credentials.")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False))
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    namespace: str | None,
    context: str | None,
    kubeconfig_path: str | None,
    in_cluster: bool | None,
    log_level: str | None,
) -> None:
    cli_context = ctx.ensure_object(CLIContext)
    cli_context.config_path = config_path
    cli_context.overrides = {
        "namespace": namespace,
        "context": context,
        "kubeconfig_path": kubeconfig_path,
        "in_cluster": in_cluster,
        "log_level": log_level.upper() if log_level else None,
    }


@cli.command(name="pod", epilog="Example: kmon pod --mode run-from-pvc --pvc-name test-pvc")
@click.option("--mode", help="run-from-pvc, run-from-snapshot, exec, delete or smoke-test.")
@click.option("--name", help="Pod name.")
@click.option("--volume-name", help="Volume name inside the pod.")
@click.option("--mount-path", help="Where the PVC is mounted in the container.")
@click.option("--pvc-name", help="PVC to mount in run-from-pvc mode.")
@click.option("--snapshot-name", help="VolumeSnapshot to restore in run-from-snapshot mode.")
@click.option("--image", help="Container image for the pod.")
@click.option("--command", "exec_command", help="Command to run in exec mode, e.g. 'bash -l'.")
@click.option("--ready-timeout", "ready_timeout_seconds", type=int, help="Seconds to wait for Running.")
@click.option("--delete-timeout", "delete_timeout_seconds", type=int, help="Seconds to wait for deletion.")
@click.option("--wait-after-restore/--no-wait-after-restore", default=None, help="Wait for Running after a restore.")
@click.pass_obj
def pod_command(cli_context: CLIContext, exec_command: str | None, **options: Any) -> None:
    """Kubernetes operations on pods."""
    options["exec_command"] = shlex.split(exec_command) if exec_command else None
    _run_workflow(cli_context, "pod", options)


@cli.command(name="pvc", epilog="Example: kmon pvc --mode snapshot-from-pvc --source-pvc-name test-pvc")
@click.option("--mode", help="create, get, delete, snapshot-from-pvc or pvc-from-snapshot.")
@click.option("--name", help="PVC name.")
@click.option("--snapshot-class-name", help="VolumeSnapshotClass; empty selects the cluster default.")
@click.option("--source-pvc-name", help="PVC to snapshot in snapshot-from-pvc mode.")
@click.option("--snapshot-name", help="Snapshot name prefix, or the snapshot to restore from.")
@click.option("--storage-class-name", help="StorageClass for new PVCs.")
@click.option("--storage-request", help="Requested capacity for new PVCs, e.g. 5Gi.")
@click.pass_obj
def pvc_command(cli_context: CLIContext, **options: Any) -> None:
    """Kubernetes operations on PVCs."""
    _run_workflow(cli_context, "pvc", options)


def _run_workflow(cli_context: CLIContext, kind: str, options: dict[str, Any]) -> None:
    exit_delay_seconds = AppConfig().exit_delay_seconds
    try:
        config = load_config(cli_context.config_path, overrides={**cli_context.overrides, kind: options})
        exit_delay_seconds = config.exit_delay_seconds
        validate_mode(kind, getattr(config, kind).mode)
        _configure_logging(config.log_level)

        cancel_event = threading.Event()
        with _cancel_on_sigterm(cancel_event):
            runner = cli_context.runner_factory(config, cancel_event)
            if kind == "pod":
                runner.handle_pod_command()
            else:
                runner.handle_pvc_command()
    except ConfigurationError as error:
        _fail(f"invalid configuration: {error}", exit_code=EXIT_CONFIGURATION_ERROR, delay=exit_delay_seconds)
    except (KubernetesAuthenticationError, WorkflowStepError) as error:
        _fail(str(error), exit_code=EXIT_FAILURE, delay=exit_delay_seconds)

    # Give log viewers such as k9s a moment to pick up the output.
    time.sleep(exit_delay_seconds)


def _fail(message: str, *, exit_code: int, delay: float) -> None:
    click.echo(f"kmon failed: {message}", err=True)
    time.sleep(delay)
    raise click.exceptions.Exit(exit_code)


def _configure_logging(level: str) -> None:
    level = level.strip().upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger().setLevel(level)


@contextmanager
def _cancel_on_sigterm(cancel_event: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handle_sigterm(signum: int, _frame: Any) -> None:
        logger.warning("received signal %s, cancelling in-flight operation", signum)
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGTERM, _handle_sigterm)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous_handler)


def main() -> None:
    cli(prog_name="kmon")


if __name__ == "__main__":
    main()
