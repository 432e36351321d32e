#!/usr/bin/env python3
"""
CLI tool for the OVC machine reconciler
Plans and applies machine manifests against OpenvCloud
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from tabulate import tabulate

from config import get_config
from engine import MachineEngine
from errors import MachineError
from plugins.registry import get_registry, register_builtin_plugins
from reconciler import MachineReconciler, ReconcileResult, plan_machine
from state import ResourceRecord, StateStore

logger = logging.getLogger(__name__)


def load_manifest(filename: str) -> Dict[str, Dict[str, Any]]:
    """Read a YAML/JSON manifest and return its machines by name"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    machines = (data or {}).get("machines") if isinstance(data, dict) else None
    if not isinstance(machines, dict) or not machines:
        raise click.ClickException(
            f"{filename}: expected a non-empty 'machines' mapping of name to config"
        )
    for name, spec in machines.items():
        if not isinstance(spec, dict):
            raise click.ClickException(f"{filename}: machine {name} must be a mapping")
    return machines


class MachineCLI:
    """Wires the record store, gateway and engine together for one command"""

    def __init__(self, state_file: str, gateway_name: str):
        self.store = StateStore(state_file)
        self.store.load()
        self.gateway_name = gateway_name

    async def _reconciler(self) -> MachineReconciler:
        config = get_config()
        registry = get_registry()
        try:
            gateway = await registry.get_gateway(
                self.gateway_name,
                config.plugins.get_plugin_config(self.gateway_name),
            )
        except ValueError as e:
            raise click.ClickException(str(e))
        return MachineReconciler(MachineEngine(gateway), self.store)

    def run(self, coro_fn, *args):
        """Run an async command body against a fresh reconciler"""

        async def main():
            try:
                reconciler = await self._reconciler()
                return await coro_fn(reconciler, *args)
            finally:
                await get_registry().close_all()

        return asyncio.run(main())


async def _apply_all(
    reconciler: MachineReconciler,
    machines: Dict[str, Dict[str, Any]],
    max_concurrent: int,
) -> List[Tuple[str, ReconcileResult]]:
    """Reconcile machines concurrently; each pass is itself sequential"""
    semaphore = asyncio.Semaphore(max_concurrent)

    async def run(name: str, spec: Dict[str, Any]) -> Tuple[str, ReconcileResult]:
        async with semaphore:
            return name, await reconciler.reconcile(name, spec)

    return await asyncio.gather(*(run(n, s) for n, s in machines.items()))


def _result_rows(results: List[Tuple[str, ReconcileResult]]) -> List[List[Any]]:
    return [
        [
            name,
            result.action,
            result.machine_id or "-",
            "✓" if result.success else "✗",
            "\n".join(result.operations) or "-",
            result.message,
        ]
        for name, result in results
    ]


def _public_record(record: ResourceRecord, show_secrets: bool) -> Dict[str, Any]:
    data = record.to_dict()
    if not show_secrets and data["attributes"].get("password"):
        data["attributes"]["password"] = "********"
    return data


@click.group()
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Record store file (default: $STATE_FILE or ovc-machines.json)",
)
@click.option("--gateway", default=None, help="Gateway plugin (default: $GATEWAY)")
@click.option("--log-level", default=None, help="Log level (default: $LOG_LEVEL)")
@click.pass_context
def cli(ctx, state_file, gateway, log_level):
    """OVC machine reconciler - converge machines to a declared config"""
    config = get_config()
    logging.basicConfig(
        level=(log_level or config.logging.level).upper(),
        format=config.logging.format,
    )
    register_builtin_plugins()

    ctx.obj = MachineCLI(
        state_file=state_file or config.reconciler.state_file,
        gateway_name=gateway or config.plugins.gateway,
    )


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def plan(client, filename):
    """Show what apply would do, without touching any machine"""
    machines = load_manifest(filename)

    rows = []
    for name, spec in machines.items():
        try:
            machine_plan = plan_machine(client.store, name, spec)
        except MachineError as e:
            rows.append([name, "error", "-", str(e)])
            continue
        rows.append(
            [
                name,
                machine_plan.action,
                machine_plan.machine_id or "-",
                "\n".join(machine_plan.operations) or "-",
            ]
        )

    headers = ["Name", "Action", "Machine ID", "Operations"]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))
    if any(row[1] == "error" for row in rows):
        raise SystemExit(1)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Create or update machines from a YAML/JSON manifest"""
    machines = load_manifest(filename)
    max_concurrent = get_config().reconciler.max_concurrent_reconciles

    results = client.run(_apply_all, machines, max_concurrent)

    headers = ["Name", "Action", "Machine ID", "OK", "Operations", "Message"]
    click.echo(tabulate(_result_rows(results), headers=headers, tablefmt="grid"))
    if not all(result.success for _, result in results):
        raise SystemExit(1)


@cli.command()
@click.argument("name", required=False)
@click.pass_obj
def refresh(client, name):
    """Re-read machines and update their stored attributes"""
    names = [name] if name else [record.name for record in client.store.list()]

    async def body(reconciler):
        return [(n, await reconciler.refresh(n)) for n in names]

    results = client.run(body)
    headers = ["Name", "Action", "Machine ID", "OK", "Operations", "Message"]
    click.echo(tabulate(_result_rows(results), headers=headers, tablefmt="grid"))
    if not all(result.success for _, result in results):
        raise SystemExit(1)


@cli.command()
@click.argument("name", required=False)
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.option("--show-secrets", is_flag=True, help="Include machine passwords")
@click.pass_obj
def show(client, name, output, show_secrets):
    """Show stored machine records"""
    if name:
        record = client.store.get(name)
        if record is None:
            raise click.ClickException(f"No record named {name}")
        records = [record]
    else:
        records = client.store.list()

    if output == "json":
        data = [_public_record(r, show_secrets) for r in records]
        click.echo(json.dumps(data, indent=2))
        return
    if output == "yaml":
        data = [_public_record(r, show_secrets) for r in records]
        click.echo(yaml.dump(data, default_flow_style=False))
        return

    headers = ["Name", "Machine ID", "Status", "IP", "Memory", "vCPUs", "Message"]
    rows = []
    for record in records:
        attributes = record.attributes
        rows.append(
            [
                record.name,
                record.machine_id or "-",
                record.status.value,
                attributes.get("ip_address") or "-",
                attributes.get("memory", "-"),
                attributes.get("vcpus", "-"),
                record.status_message,
            ]
        )
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, name, limit):
    """Show reconciliation history for a machine"""
    record = client.store.get(name)
    if record is None:
        raise click.ClickException(f"No record named {name}")

    headers = ["Time", "Trigger", "Action", "Success", "Duration", "Message"]
    rows = []
    for entry in record.history[-limit:]:
        rows.append(
            [
                entry["time"],
                entry["trigger_reason"],
                entry["action"],
                "✓" if entry["success"] else "✗",
                f"{entry['duration_seconds']}s",
                entry["message"],
            ]
        )
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this machine?")
@click.pass_obj
def destroy(client, name):
    """Permanently delete a machine and forget its record"""

    async def body(reconciler):
        return await reconciler.destroy(name)

    result = client.run(body)
    if not result.success:
        raise click.ClickException(result.message)
    click.echo(f"Machine {name} destroyed")


@cli.command(name="import")
@click.argument("name")
@click.argument("machine_id")
@click.pass_obj
def import_machine(client, name, machine_id):
    """Adopt an existing machine under a record name"""

    async def body(reconciler):
        return await reconciler.import_machine(name, machine_id)

    result = client.run(body)
    if not result.success:
        raise click.ClickException(result.message)
    click.echo(f"Machine {machine_id} imported as {name}")


@cli.command()
@click.argument("machine_id")
@click.pass_obj
def exists(client, machine_id):
    """Check whether a machine exists (exit code 1 if not)"""

    async def body(reconciler):
        return await reconciler.engine.exists(machine_id)

    found: Optional[bool] = client.run(body)
    click.echo("yes" if found else "no")
    if not found:
        raise SystemExit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
