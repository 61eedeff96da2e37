"""
vdc command line.

Usage:
    vdc create dc1 --topology topology.yaml
    vdc deploy dc1
    vdc --json status dc1
    vdc destroy dc1 --force --keep-base-image

Exit codes
0  success
1  deployment or lifecycle failure, or any other orchestrator error
2  invalid topology or name
3  name or subnet allocation conflict
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from ipaddress import IPv4Network
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from virtual_datacenter.core.errors import AllocationConflict, OrchestratorError, ResourceFailure, ValidationError
from virtual_datacenter.core.serialization import to_json_safe_dict
from virtual_datacenter.core.settings import VdcSettings
from virtual_datacenter.fabric.roles import tier_label
from virtual_datacenter.lifecycle.manager import VdcSummary
from virtual_datacenter.orchestrator.pipeline import DeploymentReport
from virtual_datacenter.runtime import Runtime
from virtual_datacenter.topology.loader import load_topology
from virtual_datacenter.topology.validator import validate_topology

console = Console()
logger = logging.getLogger("virtual_datacenter")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler])
    logger.setLevel(level)


def _confirm(prompt: str) -> bool:
    return Confirm.ask(prompt, default=False, console=console)


def _emit_json(payload: Any) -> None:
    console.out(json.dumps(payload, indent=2, sort_keys=True), highlight=False)


def _human_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TiB"


def _print_failures(failures: List[ResourceFailure]) -> None:
    for failure in failures:
        console.print(f"  [red]✗[/red] {failure}")


# Rendering


def _render_report(report: DeploymentReport) -> None:
    table = Table(title=f"Deployment of {report.vdc}", box=box.ROUNDED)
    table.add_column("Stage", style="cyan")
    table.add_column("Result")
    table.add_column("Summary")
    for stage in report.stages:
        table.add_row(stage.name, "[green]ok[/green]" if stage.ok else "[red]failed[/red]", stage.summary)
    console.print(table)

    if report.devices:
        devices = Table(box=box.SIMPLE)
        devices.add_column("Device")
        devices.add_column("Action")
        for name, action in report.devices.items():
            style = "red" if action == "failed" else "green" if action in ("created", "recreated") else "dim"
            devices.add_row(name, f"[{style}]{action}[/{style}]")
        console.print(devices)

    for warning in report.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")
    _print_failures(report.failures)

    if report.ok:
        body = f"[green]✓[/green] vdc [bold]{report.vdc}[/bold] is running on {report.subnet}"
        console.print(Panel(body, border_style="green"))
    else:
        body = (
            f"[red]✗[/red] vdc [bold]{report.vdc}[/bold] is degraded: "
            f"{len(report.failures)} failures. Run deploy again to retry."
        )
        console.print(Panel(body, border_style="red"))


def _summary_payload(summary: VdcSummary) -> Dict[str, Any]:
    return {
        "name": summary.name,
        "status": summary.status,
        "record": to_json_safe_dict(summary.record) if summary.record is not None else None,
        "domains": [
            dict(to_json_safe_dict(d), tier=summary.tiers[d.name].value if d.name in summary.tiers else None)
            for d in summary.domains
        ],
        "networks": [to_json_safe_dict(n) for n in summary.networks],
        "disks": [str(p) for p in summary.disks],
        "disk_usage_bytes": summary.disk_usage_bytes,
        "namespace_dir": str(summary.namespace_dir) if summary.namespace_dir else None,
    }


def _render_summary(summary: VdcSummary) -> None:
    record = summary.record
    subnet = str(record.management_subnet) if record is not None else "-"
    color = "green" if summary.status == "running" else "yellow"
    lines = [
        f"Status: [{color}]{summary.status}[/{color}]",
        f"Management subnet: {subnet}",
        f"Domains: {summary.running_domains}/{len(summary.domains)} running",
        f"Networks: {len(summary.networks)}",
        f"Namespace: {summary.namespace_dir or '-'}",
    ]
    console.print(Panel("\n".join(lines), title=f"vdc {summary.name}", border_style=color))

    if summary.domains:
        table = Table(box=box.SIMPLE)
        table.add_column("Domain")
        table.add_column("Tier")
        table.add_column("State")
        for dom in summary.domains:
            tier = summary.tiers.get(dom.name)
            table.add_row(dom.name, tier_label(tier) if tier else "-", dom.state.value)
        console.print(table)
    if summary.networks:
        table = Table(box=box.SIMPLE)
        table.add_column("Network")
        table.add_column("Bridge")
        table.add_column("Active")
        for net in summary.networks:
            table.add_row(net.name, net.bridge or "-", "yes" if net.active else "no")
        console.print(table)


# Commands


def cmd_create(rt: Runtime, args: argparse.Namespace) -> int:
    return _deploy(rt, args, require_new=True)


def cmd_deploy(rt: Runtime, args: argparse.Namespace) -> int:
    return _deploy(rt, args, require_new=False)


def _deploy(rt: Runtime, args: argparse.Namespace, require_new: bool) -> int:
    topology = rt.resolve_topology(args.vdc, args.topology)
    report = rt.orchestrator().deploy(topology, requested_subnet=args.subnet, require_new=require_new)
    if args.json:
        _emit_json(to_json_safe_dict(report))
    else:
        _render_report(report)
    return 0 if report.ok else 1


def cmd_validate(rt: Runtime, args: argparse.Namespace) -> int:
    topology = load_topology(args.topology, name=args.name, default_resources=rt.settings.default_resources)
    result = validate_topology(topology)
    if args.json:
        _emit_json(to_json_safe_dict(result))
        return 0 if result.ok else 2
    for error in result.errors:
        console.print(f"  [red]✗[/red] {error}")
    for warning in result.warnings:
        console.print(f"  [yellow]![/yellow] {warning}")
    if result.ok:
        console.print(
            f"[green]✓[/green] {args.topology}: {len(topology.devices)} devices, {len(topology.cables)} cables"
        )
    return 0 if result.ok else 2


def cmd_list(rt: Runtime, args: argparse.Namespace) -> int:
    summaries = rt.lifecycle().list()
    if args.json:
        _emit_json([_summary_payload(s) for s in summaries])
        return 0
    if not summaries:
        console.print("[yellow]No virtual datacenters registered[/yellow]")
        return 0
    table = Table(title="Virtual datacenters", box=box.ROUNDED)
    for column in ("Name", "Subnet", "Status", "Domains", "Networks", "Disk usage", "Created"):
        table.add_column(column)
    for s in summaries:
        table.add_row(
            s.name,
            str(s.record.management_subnet) if s.record else "-",
            s.status,
            f"{s.running_domains}/{len(s.domains)}",
            str(len(s.networks)),
            _human_bytes(s.disk_usage_bytes),
            s.record.created_at if s.record else "-",
        )
    console.print(table)
    return 0


def cmd_status(rt: Runtime, args: argparse.Namespace) -> int:
    summary = rt.lifecycle().summary(args.vdc)
    if args.json:
        _emit_json(_summary_payload(summary))
    elif summary.status == "absent":
        console.print(f"[yellow]vdc {args.vdc} does not exist[/yellow]")
    else:
        _render_summary(summary)
    return 1 if summary.status == "absent" else 0


def cmd_resources(rt: Runtime, args: argparse.Namespace) -> int:
    summary = rt.lifecycle().summary(args.vdc)
    groups = {family: summary.domains_in(family) for family in ("hypervisor", "switch")}
    artifacts = {sub: len(files) for sub, files in rt.paths_for(args.vdc).list_artifacts().items()}
    if args.json:
        payload = {
            "name": summary.name,
            "hypervisors": [d.name for d in groups["hypervisor"]],
            "switches": [d.name for d in groups["switch"]],
            "vcpus": sum(d.vcpus for d in summary.domains),
            "memory_mb": sum(d.memory_mb for d in summary.domains),
            "disks": len(summary.disks),
            "disk_usage_bytes": summary.disk_usage_bytes,
            "artifacts": artifacts,
        }
        _emit_json(payload)
        return 0

    for family, title in (("hypervisor", "Hypervisors"), ("switch", "Switches")):
        table = Table(title=title, box=box.SIMPLE)
        table.add_column("Domain")
        table.add_column("State")
        table.add_column("vCPU", justify="right")
        table.add_column("Memory MB", justify="right")
        for dom in groups[family]:
            table.add_row(dom.name, dom.state.value, str(dom.vcpus), str(dom.memory_mb))
        console.print(table)
    console.print(f"Disks: {len(summary.disks)} files, {_human_bytes(summary.disk_usage_bytes)}")
    console.print("Namespace files: " + ", ".join(f"{sub} {count}" for sub, count in artifacts.items()))
    return 0


def cmd_topology(rt: Runtime, args: argparse.Namespace) -> int:
    topology = rt.resolve_topology(args.vdc, args.topology)
    paths = rt.paths_for(args.vdc)
    if args.json:
        _emit_json(to_json_safe_dict(topology))
        return 0

    devices = Table(title=f"Devices of {topology.name}", box=box.ROUNDED)
    for column in ("Tier", "Device", "ASN", "Router ID", "Management", "Interfaces"):
        devices.add_column(column)
    for device in topology.devices:
        devices.add_row(
            tier_label(device.tier),
            device.name,
            str(device.asn),
            str(device.router_id),
            str(device.management_address),
            ", ".join(i.name for i in device.interfaces),
        )
    console.print(devices)

    cabling = Table(title="Cabling", box=box.ROUNDED)
    for column in ("#", "Source", "Destination", "Segment", "Description"):
        cabling.add_column(column)
    for cable in topology.cables:
        cabling.add_row(
            str(cable.index),
            str(cable.source),
            str(cable.destination),
            paths.segment_name(cable.index),
            cable.description,
        )
    console.print(cabling)
    return 0


def cmd_stop(rt: Runtime, args: argparse.Namespace) -> int:
    result = rt.lifecycle().stop(args.vdc)
    console.print(f"[cyan]→[/cyan] stopped {len(result.succeeded)}, already stopped {len(result.skipped)}")
    _print_failures(result.failures)
    return 0 if result.ok else 1


def cmd_start(rt: Runtime, args: argparse.Namespace) -> int:
    result = rt.lifecycle().start(args.vdc)
    console.print(f"[cyan]→[/cyan] started {len(result.succeeded)}, already running {len(result.skipped)}")
    _print_failures(result.failures)
    return 0 if result.ok else 1


def cmd_destroy(rt: Runtime, args: argparse.Namespace) -> int:
    if not args.force:
        console.print(
            Panel(f"This destroys every domain, network and file of vdc [bold]{args.vdc}[/bold]", border_style="red")
        )
    result = rt.lifecycle().destroy(
        args.vdc,
        force=args.force,
        confirm=_confirm,
        remove_credentials=args.remove_keys,
        confirm_credentials=_confirm,
        keep_disks=args.keep_base_image,
    )
    if result.aborted:
        console.print("[yellow]Destroy cancelled[/yellow]")
        return 1
    console.print(
        f"[cyan]→[/cyan] removed {len(result.removed_domains)} domains, {len(result.removed_networks)} networks"
    )
    if result.disks_kept:
        console.print("  disk images kept")
    if result.credentials_removed:
        console.print("  ssh keys removed")
    _print_failures(result.failures)
    return 0 if result.ok else 1


def cmd_cleanup_orphans(rt: Runtime, args: argparse.Namespace) -> int:
    topology = rt.resolve_topology(args.vdc, args.topology)
    reconciler = rt.reconciler(args.vdc)
    report = reconciler.detect(topology)
    for warning in report.warnings():
        console.print(f"  [yellow]![/yellow] {warning}")
    if report.clean:
        console.print(f"[green]✓[/green] no orphaned resources in vdc {args.vdc}")
        return 0
    result = reconciler.cleanup(report, confirm=_confirm, force=args.force)
    if result.aborted:
        console.print("[yellow]Cleanup cancelled[/yellow]")
        return 1
    console.print(
        f"[cyan]→[/cyan] removed {len(result.removed_domains)} domains, "
        f"{len(result.removed_networks)} networks, {len(result.removed_disks)} disks"
    )
    _print_failures(result.failures)
    return 0 if result.ok else 1


def _subnet(text: str) -> IPv4Network:
    try:
        return IPv4Network(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid subnet {text!r}: {exc}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vdc",
        description="Deploy and manage virtual datacenters on libvirt",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--root", type=Path, help="Project root holding config/ and images/")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json", action="store_true", help="Machine readable output")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, func, topology_required in (("create", cmd_create, True), ("deploy", cmd_deploy, False)):
        p = sub.add_parser(name, help=f"{name.capitalize()} a virtual datacenter")
        p.add_argument("vdc")
        p.add_argument("--topology", type=Path, required=topology_required)
        p.add_argument("--subnet", type=_subnet, help="Management subnet, for example 192.168.20.0/24")
        p.set_defaults(func=func)

    p = sub.add_parser("validate", help="Validate a topology file")
    p.add_argument("--topology", type=Path, required=True)
    p.add_argument("--name", help="Override datacenter_name")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("list", help="List registered virtual datacenters")
    p.set_defaults(func=cmd_list)

    for name, func, text in (
        ("status", cmd_status, "Show status"),
        ("resources", cmd_resources, "Show compute and disk usage"),
        ("stop", cmd_stop, "Stop every domain"),
        ("start", cmd_start, "Start every domain"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("vdc")
        p.set_defaults(func=func)

    p = sub.add_parser("topology", help="Show devices and cabling")
    p.add_argument("vdc")
    p.add_argument("--topology", type=Path)
    p.set_defaults(func=cmd_topology)

    p = sub.add_parser("destroy", help="Destroy a virtual datacenter")
    p.add_argument("vdc")
    p.add_argument("--force", action="store_true", help="Skip the confirmation")
    p.add_argument("--keep-base-image", action="store_true", help="Keep the disk images of the vdc")
    p.add_argument("--remove-keys", action="store_true", help="Also remove ssh keys, asks separately")
    p.set_defaults(func=cmd_destroy)

    p = sub.add_parser("cleanup-orphans", help="Remove resources not declared in the topology")
    p.add_argument("vdc")
    p.add_argument("--topology", type=Path)
    p.add_argument("--force", action="store_true", help="Skip the confirmation")
    p.set_defaults(func=cmd_cleanup_orphans)

    return parser


def main(argv: Optional[Sequence[str]] = None, runtime: Optional[Runtime] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if runtime is None:
        settings = VdcSettings.from_env()
        if args.root is not None:
            settings = settings.with_root(args.root.expanduser().resolve())
        runtime = Runtime.from_settings(settings)

    try:
        return args.func(runtime, args)
    except ValidationError as exc:
        console.print("[red]✗[/red] validation failed")
        for error in exc.errors:
            console.print(f"  [red]-[/red] {error}")
        return 2
    except AllocationConflict as exc:
        console.print(f"[red]✗[/red] {exc}")
        return 3
    except OrchestratorError as exc:
        console.print(f"[red]✗[/red] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
