#!/usr/bin/env python3
"""
vmsnapshot CLI - run the snapshot controller or inspect a snapshot.
"""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from vmsnapshot import __version__
from vmsnapshot.backends.kubernetes import (
    KubernetesCache,
    KubernetesClient,
    KubernetesEventRecorder,
    KubernetesWatcher,
    load_api_client,
)
from vmsnapshot.cluster.kinds import Kind
from vmsnapshot.cluster.meta import format_time, split_key
from vmsnapshot.config import ControllerConfig
from vmsnapshot.errors import NotFoundError
from vmsnapshot.events import (
    AuditEventRecorder,
    EventRecorder,
    FanOutEventRecorder,
    LoggingEventRecorder,
)
from vmsnapshot.logging import configure_logging
from vmsnapshot.runner import LOOKUP_KINDS, WATCHED_KINDS, SnapshotRunner
from vmsnapshot.snapshots.controller import SnapshotController
from vmsnapshot.snapshots.models import ConditionStatus, VirtualMachineSnapshot

console = Console()


def load_config(args) -> ControllerConfig:
    """Config file (if any), then environment, then command-line flags."""
    config_path = getattr(args, "config", None)
    config = ControllerConfig.load(Path(config_path)) if config_path else None
    config = ControllerConfig.from_env(config)

    overrides = {}
    if getattr(args, "namespace", None):
        overrides["namespace"] = args.namespace
    if getattr(args, "workers", None):
        overrides["workers"] = args.workers
    if getattr(args, "verbose", False):
        overrides["log_level"] = "DEBUG"
    if overrides:
        config = ControllerConfig.model_validate({**config.model_dump(), **overrides})
    return config


def build_recorder(kube: KubernetesClient, config: ControllerConfig) -> EventRecorder:
    """Publish to the API server and the controller log, plus the audit log if set."""
    recorders: List[EventRecorder] = [KubernetesEventRecorder(kube), LoggingEventRecorder()]
    if config.audit_log:
        recorders.append(AuditEventRecorder(config.audit_log))
    return FanOutEventRecorder(*recorders)


def cmd_run(args):
    """Start the controller and block until interrupted."""
    config = load_config(args)
    configure_logging(config.log_level, json_output=config.log_json, log_file=config.log_file)

    kube = KubernetesClient(load_api_client(config.kubeconfig, config.in_cluster))
    cache = KubernetesCache(kube, namespace=config.namespace)
    watcher = KubernetesWatcher(kube, WATCHED_KINDS + LOOKUP_KINDS, namespace=config.namespace)
    watcher.on_relist(cache.relist)
    watcher.watch(cache.handle_event)
    controller = SnapshotController(
        cache,
        kube,
        build_recorder(kube, config),
        retry_interval=config.retry_interval_seconds,
    )
    runner = SnapshotRunner(
        controller,
        watcher,
        workers=config.workers,
        backoff_base=config.backoff_base_seconds,
        backoff_max=config.backoff_max_seconds,
        resync_period=config.resync_period_seconds,
    )

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    console.print(
        f"[cyan]Watching snapshots in {config.namespace or 'all namespaces'} "
        f"with {config.workers} worker(s)[/]"
    )
    watcher.start()
    try:
        runner.run(stop)
    finally:
        watcher.stop()


def render_status(snapshot: VirtualMachineSnapshot) -> Table:
    """Tabulate a snapshot's readiness, error and conditions."""
    table = Table(title=f"VirtualMachineSnapshot {snapshot.key}", border_style="cyan")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    source = snapshot.spec.source
    table.add_row("Source", f"{source.kind}/{source.name}")
    table.add_row("Deletion policy", snapshot.deletion_policy.value)

    status = snapshot.status
    if status is None:
        table.add_row("Phase", "[dim]pending[/]")
        return table

    if snapshot.ready:
        phase = "[green]ready[/]"
    elif snapshot.error is not None:
        phase = "[red]failed[/]"
    else:
        phase = "[yellow]in progress[/]"
    table.add_row("Phase", phase)
    table.add_row("Content", status.content_name or "-")
    table.add_row("Created", format_time(status.creation_time) or "-")
    if status.error is not None:
        table.add_row("Error", f"[red]{status.error.message}[/]")

    for condition in status.conditions:
        style = {
            ConditionStatus.TRUE: "green",
            ConditionStatus.FALSE: "red",
            ConditionStatus.UNKNOWN: "dim",
        }[condition.status]
        table.add_row(
            condition.type.value,
            f"[{style}]{condition.status.value}[/] {condition.reason}",
        )
    return table


def cmd_status(args):
    """Show one snapshot."""
    namespace, name = split_key(args.snapshot)
    if not namespace:
        namespace = getattr(args, "namespace", None) or "default"

    config = load_config(args)
    kube = KubernetesClient(load_api_client(config.kubeconfig, config.in_cluster))
    try:
        snapshot = kube.get(Kind.SNAPSHOT, namespace, name)
    except NotFoundError:
        console.print(f"[red]❌ VirtualMachineSnapshot {namespace}/{name} not found[/]")
        sys.exit(1)

    if getattr(args, "json", False):
        print(json.dumps(snapshot.to_dict(), indent=2))
        return

    console.print(render_status(snapshot))


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="vmsnapshot", description="Virtual machine snapshot controller"
    )
    parser.add_argument("--version", action="version", version=f"vmsnapshot {__version__}")
    parser.add_argument("--config", "-c", help="YAML config file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the controller")
    run_parser.add_argument("--namespace", "-n", help="Namespace to watch (default: all)")
    run_parser.add_argument("--workers", "-w", type=int, help="Concurrent workers (default: 2)")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show a snapshot's status")
    status_parser.add_argument("snapshot", help="NAMESPACE/NAME or NAME")
    status_parser.add_argument("--namespace", "-n", help="Namespace when NAME is unqualified")
    status_parser.add_argument("--json", action="store_true", help="Output raw JSON")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        try:
            args.func(args)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted.[/]")
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/]")
            sys.exit(1)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
