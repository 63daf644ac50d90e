"""Typer-powered command line for ``stonectl``.

Each command maps onto one :class:`~stonectl.node.NodeController` operation,
standing in for the orchestration layer that normally drives the node. The
controller records every mutating operation in the structured log; the CLI
only renders results and translates failures into exit codes.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import NodeError
from .exit_codes import ExitCode
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .node import NodeController
from .state import StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stonectl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    help="Provision and supervise MagLev stones on this node.",
    no_args_is_help=False,
    add_completion=False,
)
instances_app = typer.Typer(help="Inspect persisted instance records.")
config_app = typer.Typer(help="Inspect stonectl configuration.")
app.add_typer(instances_app, name="instances")
app.add_typer(config_app, name="config")


@dataclass(slots=True)
class RuntimeContext:
    """Objects shared across a single CLI invocation."""

    config: AppConfig
    logger: StructuredLogger
    node: NodeController | None = None


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _get_node(ctx: typer.Context, *, reconcile: bool = False) -> NodeController:
    """Build the controller and rebuild its ledger from the registry."""
    runtime = _get_runtime(ctx)
    if runtime.node is not None:
        return runtime.node
    try:
        node = NodeController.from_config(runtime.config)
        node.initialize(reconcile=reconcile)
    except ConfigError as exc:
        _fail(str(exc), ExitCode.VALIDATION)
    except (LockTimeoutError, StateRegistryError, OSError) as exc:
        _fail(f"Node unavailable: {exc}", ExitCode.ENVIRONMENT)
    except NodeError as exc:
        _fail(str(exc), exc.exit_code)
    runtime.node = node
    return node


def _fail(message: str, code: ExitCode) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(code))


def _parse_options(raw: Sequence[str] | None) -> dict[str, str]:
    options: dict[str, str] = {}
    for item in raw or ():
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            _fail(f"Invalid option '{item}'; expected KEY=VALUE.", ExitCode.VALIDATION)
        options[key.strip()] = value
    return options


def _list_entries(node: NodeController, op: OperationScope) -> list[dict[str, object]]:
    try:
        return node.list_instances()
    except StateRegistryError as exc:
        message = f"Registry unavailable: {exc}"
        op.error(message, rc=int(ExitCode.ENVIRONMENT))
        _fail(message, ExitCode.ENVIRONMENT)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stonectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stonectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def announce(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report the memory this node can still allocate."""
    node = _get_node(ctx)
    payload = node.announcement()
    if json_output:
        console.print_json(data=payload)
        return
    console.print(f"Available memory: [bold]{payload['available_memory']}[/bold]")


@app.command()
def provision(
    ctx: typer.Context,
    plan: str = typer.Argument(..., help="Service plan to provision (e.g. free)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision and start a new stone."""
    node = _get_node(ctx)
    try:
        response = node.provision(plan)
    except NodeError as exc:
        _fail(f"Provisioning failed: {exc}", exc.exit_code)
    except (LockTimeoutError, StateRegistryError) as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)
    if json_output:
        console.print_json(data=response)
        return
    console.print(
        f"[green]Provisioned '{response['name']}' "
        f"(pid {response['pid']}) on {response['hostname']}.[/green]"
    )


@app.command()
def unprovision(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
) -> None:
    """Stop a stone and delete its record and files."""
    node = _get_node(ctx)
    try:
        node.unprovision(name)
    except NodeError as exc:
        _fail(f"Unprovision failed: {exc}", exc.exit_code)
    except (LockTimeoutError, StateRegistryError) as exc:
        _fail(str(exc), ExitCode.ENVIRONMENT)
    console.print(f"[yellow]Unprovisioned '{name}'.[/yellow]")


@app.command()
def bind(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to bind."),
    opt: list[str] | None = typer.Option(
        None,
        "--opt",
        metavar="KEY=VALUE",
        help="Bind option passed through to the node (repeatable).",
    ),
) -> None:
    """Print connection details for a stone as JSON."""
    node = _get_node(ctx)
    try:
        response = node.bind(name, _parse_options(opt))
    except NodeError as exc:
        _fail(str(exc), exc.exit_code)
    if response is None:
        _fail(f"No binding available for '{name}'.", ExitCode.VALIDATION)
    console.print_json(data=response)


@app.command()
def unbind(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to unbind."),
) -> None:
    """Release a binding for a stone."""
    node = _get_node(ctx)
    try:
        node.unbind({"name": name})
    except NodeError as exc:
        _fail(str(exc), exc.exit_code)
    console.print(f"Unbound '{name}'.")


@app.command()
def reconcile(ctx: typer.Context) -> None:
    """Restart every persisted stone that is not running."""
    node = _get_node(ctx, reconcile=True)
    console.print(f"Available memory: [bold]{node.announcement()['available_memory']}[/bold]")


@app.command()
def shutdown(ctx: typer.Context) -> None:
    """Signal every persisted stone to stop."""
    node = _get_node(ctx)
    node.shutdown()
    console.print("[yellow]Shutdown signal sent to all instances.[/yellow]")


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List persisted instances and whether their stone is running."""
    runtime = _get_runtime(ctx)
    node = _get_node(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        entries = _list_entries(node, op)
        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Plan")
        table.add_column("Memory")
        table.add_column("PID")
        table.add_column("Running")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["plan"]),
                str(entry["memory"]),
                "" if entry.get("pid") is None else str(entry["pid"]),
                "yes" if entry.get("running") else "no",
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a single instance record."""
    runtime = _get_runtime(ctx)
    node = _get_node(ctx)
    with runtime.logger.operation(
        "instances show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        entry = next((item for item in _list_entries(node, op) if item["name"] == name), None)
        if entry is None:
            message = f"Instance '{name}' not found."
            op.error(message, rc=int(ExitCode.VALIDATION))
            _fail(message, ExitCode.VALIDATION)

        if json_output:
            console.print_json(data=entry)
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in entry.items():
            if value in (None, ""):
                continue
            table.add_row(key.replace("_", " ").title(), str(value))
        console.print(table)
        op.success("Displayed instance details.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - thin console-script wrapper
    """Console-script entry point."""
    app()


__all__ = ["app", "main"]
