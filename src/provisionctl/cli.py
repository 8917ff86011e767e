"""Typer-powered command line interface for ``provisionctl``.

Commands operate on context definitions stored under
``<config_root>/provision``. ``save`` edits definitions only; ``verify``
regenerates every configuration artifact the bound services declare and asks
the services to reload.
"""
from __future__ import annotations

import signal
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .contexts import (
    Context,
    ContextStore,
    ContextStoreError,
    ContextType,
    VerifyState,
    build_context,
)
from .exit_codes import ExitCode
from .hooks import ExtensionHookBus, MergePolicy
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .orchestrator import VerifyOrchestrator, VerifyReport
from .services import ServiceError, ServiceRegistry, default_registry
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to provisionctl's YAML config file.",
)

TARGET_OPTION = typer.Option(
    ...,
    "--target",
    "-t",
    help="Name of the context to operate on.",
)

TARGETS_OPTION = typer.Option(
    None,
    "--target",
    "-t",
    help="Context to operate on (repeatable; defaults to every context).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

_TYPE_ORDER = {ContextType.SERVER: 0, ContextType.PLATFORM: 1, ContextType.SITE: 2}

_STATE_STYLES = {
    VerifyState.VERIFIED: "[green]verified[/green]",
    VerifyState.FAILED: "[red]failed[/red]",
    VerifyState.VERIFYING: "[yellow]verifying[/yellow]",
    VerifyState.UNVERIFIED: "[dim]unverified[/dim]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Hosting provisioning CLI.

        Describe servers, platforms and sites as contexts, then verify them to
        write the web server, database and application configuration they need.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: ContextStore
    registry: ServiceRegistry
    hooks: ExtensionHookBus
    templates: TemplateEngine
    locks: LockManager
    logger: StructuredLogger
    orchestrator: VerifyOrchestrator


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
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    store = ContextStore(config.contexts_dir)
    registry = default_registry()
    hooks = ExtensionHookBus(policy=MergePolicy(config.hooks.merge_policy), logger=logger)
    hooks.load_entry_points(config.hooks.entry_point_group)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    orchestrator = VerifyOrchestrator(
        store,
        registry,
        hooks,
        templates,
        config,
        logger=logger,
    )
    runtime = RuntimeContext(
        config=config,
        store=store,
        registry=registry,
        hooks=hooks,
        templates=templates,
        locks=locks,
        logger=logger,
        orchestrator=orchestrator,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the provisionctl version and exit.",
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
        console.print(f"provisionctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


@contextmanager
def _guard(op: OperationScope) -> Iterator[None]:
    """Translate library errors into exit codes."""
    try:
        yield
    except (ContextStoreError, ServiceError) as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _parse_assignment(raw: str, option: str) -> tuple[str, str]:
    key, sep, value = raw.partition("=")
    if not sep or not key.strip():
        raise typer.BadParameter(f"Expected KEY=VALUE, got {raw!r}.", param_hint=option)
    return key.strip(), value.strip()


def _parse_value(raw: str) -> object:
    if raw == "":
        return ""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _assign_path(target: dict[str, Any], dotted: str, value: object) -> None:
    parts = [part for part in dotted.split(".") if part]
    cursor = target
    for part in parts[:-1]:
        existing = cursor.get(part)
        if not isinstance(existing, dict):
            existing = {}
            cursor[part] = existing
        cursor = existing
    cursor[parts[-1]] = value


def _select_targets(runtime: RuntimeContext, names: Sequence[str] | None) -> list[Context]:
    if names:
        return [runtime.store.load(name) for name in dict.fromkeys(names)]
    contexts = runtime.store.discover()
    return sorted(contexts.values(), key=lambda item: (_TYPE_ORDER[item.type], item.name))


def _service_summary(services: Mapping[str, Mapping[str, Any]]) -> str:
    parts = [
        f"{service_type}: {binding.get('type', '?')}"
        for service_type, binding in services.items()
    ]
    return ", ".join(parts) or "-"


@contextmanager
def _cancel_on_interrupt(orchestrator: VerifyOrchestrator) -> Iterator[None]:
    """Let Ctrl-C stop dispatching new targets instead of killing the run."""
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: object) -> None:
        console.print("[yellow]Interrupted: finishing targets already started.[/yellow]")
        orchestrator.cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread; run without the handler.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _render_verify_report(report: VerifyReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Context", style="bold")
    table.add_column("State")
    table.add_column("Artifacts", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Details")

    if not report.outcomes:
        table.add_row("(none)", "", "", "", "")
    for outcome in report.outcomes.values():
        written = [item for item in outcome.artifacts if item.error is None]
        changed = sum(1 for item in written if item.changed)
        details = outcome.errors[0] if outcome.errors else ""
        if not details and outcome.warnings:
            details = f"[yellow]{outcome.warnings[0]}[/yellow]"
        table.add_row(
            outcome.name,
            _STATE_STYLES[outcome.state],
            str(len(written)),
            str(changed),
            details,
        )
    console.print(table)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def save(
    ctx: typer.Context,
    target: str = TARGET_OPTION,
    context_type: str | None = typer.Option(
        None,
        "--type",
        help="Context type (server, platform, site); required for new contexts.",
    ),
    uri: str | None = typer.Option(None, "--uri", help="Public URI of the context."),
    parent: str | None = typer.Option(
        None,
        "--parent",
        help="Server of a platform, or platform of a site.",
    ),
    service: list[str] | None = typer.Option(
        None,
        "--service",
        metavar="TYPE=SUBTYPE",
        help="Bind a service, e.g. http=apache (repeatable).",
    ),
    service_option: list[str] | None = typer.Option(
        None,
        "--service-option",
        metavar="TYPE.KEY=VALUE",
        help="Set a service binding attribute, e.g. http.port=8080 (repeatable).",
    ),
    setting: list[str] | None = typer.Option(
        None,
        "--set",
        metavar="KEY=VALUE",
        help="Set a configuration value; dotted keys nest (repeatable).",
    ),
) -> None:
    """Create or update a context definition without touching artifacts."""
    runtime = _get_runtime(ctx)
    args = {
        "type": context_type,
        "uri": uri,
        "parent": parent,
        "service": list(service or []),
        "service_option": list(service_option or []),
        "set": list(setting or []),
    }
    with runtime.logger.operation(
        "save",
        args=args,
        target={"kind": "context", "name": target},
    ) as op, _guard(op):
        with runtime.locks.mutate_contexts([target]) as bundle:
            existing = runtime.store.discover(target).get(target)
            if existing is None and context_type is None:
                _command_error(op, f"Context '{target}' does not exist; pass --type to create it.")

            data: dict[str, Any] = dict(existing.to_dict()) if existing is not None else {}
            resolved_type = context_type or data.get("type")
            if existing is not None and context_type and existing.type.value != context_type:
                _command_error(
                    op,
                    f"Context '{target}' is a {existing.type.value}; it cannot become a "
                    f"{context_type}.",
                )
            if uri is not None:
                data["uri"] = uri

            services: dict[str, Any] = dict(data.get("services") or {})
            for raw in service or []:
                service_type, subtype = _parse_assignment(raw, "--service")
                binding = dict(services.get(service_type) or {})
                binding["type"] = subtype
                services[service_type] = binding
            for raw in service_option or []:
                dotted, value = _parse_assignment(raw, "--service-option")
                service_type, _, key = dotted.partition(".")
                if not key:
                    raise typer.BadParameter(
                        f"Expected TYPE.KEY=VALUE, got {raw!r}.",
                        param_hint="--service-option",
                    )
                binding = dict(services.get(service_type) or {})
                _assign_path(binding, key, _parse_value(value))
                services[service_type] = binding
            data["services"] = services

            configuration: dict[str, Any] = dict(data.get("configuration") or {})
            for raw in setting or []:
                key, value = _parse_assignment(raw, "--set")
                _assign_path(configuration, key, _parse_value(value))
            data["configuration"] = configuration

            context = build_context(str(resolved_type), target, data)
            if parent is not None:
                if context.PARENT_KEY is None:
                    _command_error(op, f"{context.type.value} contexts do not have a parent.")
                context.parent = parent
            if context.type is not ContextType.SERVER:
                runtime.store.resolve_chain(context)

            path = runtime.orchestrator.save(context)

        action = "Created" if existing is None else "Updated"
        console.print(f"{action} {context.identifier} at {path}.")
        op.success(
            f"{action} context definition.",
            changed=1,
            context={"path": str(path), "lock_wait_ms": bundle.wait_ms},
        )


@app.command()
def verify(
    ctx: typer.Context,
    targets: list[str] | None = TARGETS_OPTION,
    no_restart: bool = typer.Option(
        False,
        "--no-restart",
        help="Write artifacts but skip service reloads.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Regenerate configuration artifacts for the selected contexts."""
    runtime = _get_runtime(ctx)
    args = {"targets": list(targets or []), "no_restart": no_restart, "json": json_output}
    with runtime.logger.operation(
        "verify",
        args=args,
        target={"kind": "contexts", "names": list(targets or [])},
    ) as op, _guard(op):
        contexts = _select_targets(runtime, targets)
        if not contexts:
            _command_error(op, "No contexts found. Use `provisionctl save` to create one.")
        names = [context.name for context in contexts]
        with runtime.locks.mutate_contexts(names), _cancel_on_interrupt(runtime.orchestrator):
            run_post_actions = False if no_restart else None
            report = runtime.orchestrator.verify(contexts, run_post_actions=run_post_actions)

        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_verify_report(report)

        changed = sum(
            1
            for outcome in report.outcomes.values()
            for artifact in outcome.artifacts
            if artifact.changed
        )
        warnings = [
            f"{outcome.name}: {warning}"
            for outcome in report.outcomes.values()
            for warning in outcome.warnings
        ]
        if not report.ok:
            failed = [outcome.name for outcome in report.failures()]
            message = f"Verification failed for: {', '.join(failed)}."
            if not json_output:
                console.print(f"[red]{message}[/red]")
            errors = [
                f"{outcome.name}: {error}"
                for outcome in report.failures()
                for error in (outcome.errors or [outcome.state.value])
            ]
            op.error(message, errors=errors, rc=int(ExitCode.PROVIDER), changed=changed)
            raise typer.Exit(code=int(ExitCode.PROVIDER))

        summary = f"Verified {len(report.outcomes)} context(s)."
        if warnings:
            op.warning(summary, warnings=warnings, changed=changed)
        else:
            op.success(summary, changed=changed)


@app.command()
def status(
    ctx: typer.Context,
    targets: list[str] | None = TARGETS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show declared artifacts and the last verification outcome."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"targets": list(targets or []), "json": json_output},
        target={"kind": "contexts", "names": list(targets or [])},
    ) as op, _guard(op):
        statuses = runtime.orchestrator.status(_select_targets(runtime, targets))

        if json_output:
            console.print_json(data={"contexts": [item.to_dict() for item in statuses]})
            op.success("Reported context status as JSON.", changed=0)
            return

        if not statuses:
            console.print("No contexts found.")
            op.success("Reported context status.", changed=0)
            return

        for item in statuses:
            verified_at = item.verification.verified_at if item.verification else "never"
            console.print(
                f"[bold]{item.type}.{item.name}[/bold] ({item.uri}): "
                f"{_STATE_STYLES[item.state]}, last verified {verified_at}"
            )
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Artifact", style="bold")
            table.add_column("Path")
            table.add_column("Mode")
            table.add_column("Group")
            if not item.artifacts:
                table.add_row("(none)", "", "", "")
            for artifact in item.artifacts:
                table.add_row(
                    artifact.description,
                    str(artifact.path) if artifact.path else "-",
                    f"{artifact.mode:04o}",
                    artifact.group,
                )
            console.print(table)
            for error in item.errors:
                console.print(f"  [red]{error}[/red]")
            if item.verification:
                for error in item.verification.errors:
                    console.print(f"  [red]last run: {error}[/red]")
        op.success("Reported context status.", changed=0)


@app.command()
def services(
    ctx: typer.Context,
    target: str | None = typer.Option(
        None,
        "--target",
        "-t",
        help="Show the effective service bindings of this context.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered services, or the bindings of one context."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "services",
        args={"target": target, "json": json_output},
        target={"kind": "services", "name": target},
    ) as op, _guard(op):
        if target is None:
            entries = [
                {
                    "type": service.service_type,
                    "subtype": service.subtype,
                    "label": service.label,
                    "contexts": [
                        context_type.value
                        for context_type in ContextType
                        if service.configurations_for(context_type)
                    ],
                }
                for service in runtime.registry.services()
            ]
            if json_output:
                console.print_json(data={"services": entries})
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Type", style="bold")
                table.add_column("Subtype")
                table.add_column("Label")
                table.add_column("Configures")
                for entry in entries:
                    table.add_row(
                        entry["type"],
                        entry["subtype"],
                        entry["label"],
                        ", ".join(entry["contexts"]) or "-",
                    )
                console.print(table)
            op.success("Reported registered services.", changed=0)
            return

        context = runtime.store.load(target)
        bindings = runtime.store.service_bindings(runtime.store.resolve_chain(context))
        for service_type, binding in bindings.items():
            runtime.registry.get(service_type, str(binding.get("type")))
        if json_output:
            console.print_json(data={"context": context.name, "services": bindings})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Service", style="bold")
            table.add_column("Subtype")
            table.add_column("Source")
            table.add_column("Options")
            if not bindings:
                table.add_row("(none)", "", "", "")
            for service_type, binding in bindings.items():
                source = "own" if service_type in context.services else "inherited"
                options = ", ".join(
                    f"{key}={value}" for key, value in binding.items() if key != "type"
                )
                table.add_row(service_type, str(binding.get("type")), source, options or "-")
            console.print(table)
        op.success("Reported context service bindings.", changed=0)


@app.command()
def servers(
    ctx: typer.Context,
    service: str | None = typer.Option(
        None,
        "--service",
        help="Only list servers providing this service type (e.g. http).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List servers as selectable options, optionally filtered by service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "servers",
        args={"service": service, "json": json_output},
        target={"kind": "servers"},
    ) as op, _guard(op):
        options = runtime.store.get_server_options(service)
        if json_output:
            console.print_json(data={"servers": options})
        elif not options:
            console.print("No matching servers.")
        else:
            for label in options.values():
                console.print(label)
        op.success("Reported server options.", changed=0)


@app.command("list")
def list_contexts(
    ctx: typer.Context,
    context_type: str | None = typer.Option(
        None,
        "--type",
        help="Only list contexts of this type.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List every saved context."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"type": context_type, "json": json_output},
        target={"kind": "contexts"},
    ) as op, _guard(op):
        contexts = _select_targets(runtime, None)
        if context_type is not None:
            contexts = [item for item in contexts if item.type.value == context_type]

        if json_output:
            console.print_json(data={"contexts": [item.to_dict() for item in contexts]})
            op.success("Listed contexts as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("URI")
        table.add_column("Parent")
        table.add_column("Services")
        table.add_column("State")
        if not contexts:
            table.add_row("(none)", "", "", "", "", "")
        for item in contexts:
            state = item.verification.state if item.verification else VerifyState.UNVERIFIED
            table.add_row(
                item.name,
                item.type.value,
                item.uri,
                item.parent or "-",
                _service_summary(item.services),
                _STATE_STYLES[state],
            )
        console.print(table)
        op.success("Listed contexts.", changed=0)


@app.command()
def delete(
    ctx: typer.Context,
    target: str = TARGET_OPTION,
) -> None:
    """Remove a context definition that nothing depends on."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "delete",
        args={},
        target={"kind": "context", "name": target},
    ) as op, _guard(op):
        with runtime.locks.mutate_contexts([target]) as bundle:
            runtime.store.remove(target)
        console.print(f"Deleted context '{target}'.")
        op.success(
            "Deleted context definition.",
            changed=1,
            context={"lock_wait_ms": bundle.wait_ms},
        )


@app.command("config")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config",
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
            if isinstance(value, Mapping):
                for sub_key, sub_value in value.items():
                    table.add_row(f"{key}.{sub_key}", str(sub_value))
            else:
                table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
