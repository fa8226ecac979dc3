#! /bin/env python3
from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer

from agentext.acquisition import parse_install_source
from agentext.consent import ConsentGate, InteractiveConsent, NonInteractiveConsent
from agentext.exceptions import AgentextError
from agentext.extension_manager import ExtensionManager
from agentext.internal_config import AGENTEXT_VERSION
from agentext.manifest import create_extension_scaffold
from agentext.messages import translate
from agentext.models import ServerOptions, UpdateState
from agentext.server_registry import ServerRegistry
from agentext.settings_store import SettingsStore, parse_scope

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

app: typer.Typer = typer.Typer(no_args_is_help=True)
extensions_app: typer.Typer = typer.Typer(
    no_args_is_help=True, help="Manage extensions."
)
mcp_app: typer.Typer = typer.Typer(
    no_args_is_help=True, help="Manage MCP server registrations."
)
app.add_typer(extensions_app, name="extensions")
app.add_typer(extensions_app, name="extension", hidden=True)
app.add_typer(mcp_app, name="mcp")
app.add_typer(mcp_app, name="server", hidden=True)

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class CliState:
    workspace: Path
    enabled_overrides: list[str] | None = None


@contextmanager
def _exit_on_error() -> Iterator[None]:
    """Turn library errors into a logged message and exit code 1."""
    try:
        yield
    except AgentextError as e:
        logger.error(f"{e}")
        raise typer.Exit(code=1) from e


def _state(ctx: typer.Context) -> CliState:
    if isinstance(ctx.obj, CliState):
        return ctx.obj
    return CliState(workspace=Path.cwd())


def _settings(ctx: typer.Context) -> SettingsStore:
    return SettingsStore.for_workspace(_state(ctx).workspace)


def _manager(ctx: typer.Context, consent: ConsentGate | None = None) -> ExtensionManager:
    state = _state(ctx)
    manager = ExtensionManager(
        _settings(ctx),
        consent or NonInteractiveConsent(approve=False),
        enabled_overrides=state.enabled_overrides,
    )
    manager.load_extensions()
    return manager


def _install_consent(consent: bool) -> ConsentGate:
    if consent:
        logger.info(translate("extensions.consent_flag_used"))
        return NonInteractiveConsent(approve=True)
    if sys.stdin.isatty():
        return InteractiveConsent()
    return NonInteractiveConsent(approve=False)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(AGENTEXT_VERSION)
        raise typer.Exit()


@app.callback()
def root(
    ctx: typer.Context,
    log_level: str = typer.Option("warning", help=f"One of: {', '.join(LOG_LEVELS)}"),
    workspace: Path = typer.Option(
        None, help="Workspace directory, defaults to the current directory."
    ),
    extensions: list[str] = typer.Option(
        None,
        "--extensions",
        "-e",
        help="Only activate these extensions for this run ('none' disables all).",
    ),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True
    ),
) -> None:
    """Manage agent extensions and MCP server registrations."""
    if log_level.lower() not in LOG_LEVELS:
        raise typer.BadParameter(
            translate(
                "cli.invalid_log_level", level=log_level, choices=", ".join(LOG_LEVELS)
            ),
            param_hint="--log-level",
        )
    logging.basicConfig(
        level=(getattr(logging, log_level.upper())),
        format="%(relativeCreated)d [%(levelname)s] %(message)s",
    )
    ctx.obj = CliState(
        workspace=(workspace or Path.cwd()).expanduser().resolve(),
        enabled_overrides=list(extensions) if extensions else None,
    )


@extensions_app.command("install")
def install(
    ctx: typer.Context,
    source: str,
    ref: str = typer.Option(None, help="Git ref to install from."),
    auto_update: bool = typer.Option(False, help="Update automatically with 'update --all'."),
    pre_release: bool = typer.Option(False, help="Accept pre-release versions."),
    consent: bool = typer.Option(False, help="Accept the install warning without a prompt."),
    scope: str = typer.Option("user", help="user or workspace"),
) -> None:
    """Install an extension from a git repository, archive URL or local path."""
    with _exit_on_error():
        settings_scope = parse_scope(scope)
        install_source = parse_install_source(
            source, ref=ref, auto_update=auto_update, allow_pre_release=pre_release
        )
        manager = _manager(ctx, _install_consent(consent))

    try:
        extension = asyncio.run(
            manager.install_or_update_extension(install_source, scope=settings_scope)
        )
    except AgentextError as e:
        logger.error(translate("extensions.install_failed", source=source, error=e))
        raise typer.Exit(code=1) from e
    typer.echo(translate("extensions.installed", name=extension.name))


@extensions_app.command("uninstall")
def uninstall(
    ctx: typer.Context,
    identifiers: list[str] = typer.Argument(None, help="Extension names or install sources."),
    force: bool = typer.Option(False, help="Ignore errors while deleting files."),
) -> None:
    """Uninstall one or more extensions."""
    if not identifiers:
        logger.error(translate("extensions.uninstall_missing_args"))
        raise typer.Exit(code=1)

    with _exit_on_error():
        manager = _manager(ctx)

    failed = False
    for identifier in dict.fromkeys(identifiers):
        try:
            extension = asyncio.run(manager.uninstall_extension(identifier, force=force))
        except (AgentextError, OSError) as e:
            failed = True
            logger.error(
                translate("extensions.uninstall_failed", identifier=identifier, error=e)
            )
            continue
        typer.echo(translate("extensions.uninstalled", name=extension.name))

    if failed:
        raise typer.Exit(code=1)


@extensions_app.command("enable")
def enable(
    ctx: typer.Context,
    name: str,
    scope: str = typer.Option("user", help="user or workspace"),
) -> None:
    """Enable an extension in the given scope."""
    with _exit_on_error():
        settings_scope = parse_scope(scope)
        _manager(ctx).enable_extension(name, settings_scope)
        typer.echo(translate("extensions.enabled", name=name, scope=settings_scope.value))


@extensions_app.command("disable")
def disable(
    ctx: typer.Context,
    name: str,
    scope: str = typer.Option("user", help="user or workspace"),
) -> None:
    """Disable an extension in the given scope."""
    with _exit_on_error():
        settings_scope = parse_scope(scope)
        _manager(ctx).disable_extension(name, settings_scope)
        typer.echo(translate("extensions.disabled", name=name, scope=settings_scope.value))


@extensions_app.command("list")
def list_extensions(ctx: typer.Context) -> None:
    """List installed extensions."""
    with _exit_on_error():
        manager = _manager(ctx)

    installed = manager.list_extensions()
    if not installed:
        typer.echo(translate("extensions.none_installed"))
        return
    for extension in installed:
        status = "extensions.status_active" if extension.is_active else "extensions.status_disabled"
        typer.echo(
            translate(
                "extensions.list_entry",
                name=extension.name,
                version=extension.version,
                status=translate(status),
                state=manager.update_state(extension.name).value,
            )
        )


@extensions_app.command("update")
def update(
    ctx: typer.Context,
    name: str = typer.Argument(None),
    all_extensions: bool = typer.Option(False, "--all", help="Update every extension."),
    auto_update_only: bool = typer.Option(
        False, help="With --all, only extensions installed with --auto-update."
    ),
) -> None:
    """Check for and install extension updates."""
    if not name and not all_extensions:
        logger.error(translate("extensions.update_missing_args"))
        raise typer.Exit(code=1)
    if name and all_extensions:
        logger.error(translate("extensions.update_conflicting_args"))
        raise typer.Exit(code=1)

    with _exit_on_error():
        manager = _manager(ctx, NonInteractiveConsent(approve=True))
        if name:
            results = {name: asyncio.run(manager.update_extension(name))}
        else:
            results = asyncio.run(
                manager.update_all_extensions(auto_update_only=auto_update_only)
            )

    if not results:
        typer.echo(translate("extensions.no_updates"))
    for extension_name, state in results.items():
        typer.echo(translate("extensions.update_result", name=extension_name, state=state.value))
    if UpdateState.ERROR in results.values():
        raise typer.Exit(code=1)


@extensions_app.command("validate")
def validate(ctx: typer.Context, path: Path) -> None:
    """Validate the extension at PATH without installing it."""
    with _exit_on_error():
        manager = ExtensionManager(_settings(ctx), NonInteractiveConsent(approve=False))
        manifest = manager.load_extension_config(path)
        report = manager.validate_extension(path)

    for warning in report.warnings:
        logger.warning(warning)
    for error in report.errors:
        logger.error(error)
    if not report.ok:
        logger.error(translate("extensions.validation_failed", path=path))
        raise typer.Exit(code=1)
    typer.echo(translate("extensions.validated", name=manifest.name))


@extensions_app.command("new")
def new(path: Path) -> None:
    """Create a new extension skeleton at PATH."""
    try:
        target = create_extension_scaffold(path)
    except FileExistsError as e:
        logger.error(f"{e}")
        raise typer.Exit(code=1) from e
    typer.echo(translate("extensions.created", path=target))


@mcp_app.command("add")
def add(
    ctx: typer.Context,
    name: str,
    target: str = typer.Argument(..., help="Command (stdio) or URL (sse, http)."),
    args: list[str] = typer.Argument(None, help="Arguments for a stdio command."),
    scope: str = typer.Option("project", "--scope", "-s", help="user or project"),
    transport: str = typer.Option("stdio", "--transport", "-t", help="stdio, sse or http"),
    env: list[str] = typer.Option(None, "--env", help="KEY=VALUE, repeatable."),
    header: list[str] = typer.Option(None, "--header", "-H", help="'Name: value', repeatable."),
    timeout: int = typer.Option(None, help="Connection timeout in milliseconds."),
    trust: bool = typer.Option(False, help="Skip tool call confirmations."),
    description: str = typer.Option(None),
    include_tools: list[str] = typer.Option(None, "--include-tools"),
    exclude_tools: list[str] = typer.Option(None, "--exclude-tools"),
) -> None:
    """Add or replace an MCP server registration."""
    options = ServerOptions(
        timeout=timeout,
        trust=True if trust else None,
        description=description,
        include_tools=list(include_tools) if include_tools else None,
        exclude_tools=list(exclude_tools) if exclude_tools else None,
    )
    with _exit_on_error():
        registry = ServerRegistry(_settings(ctx))
        try:
            result = registry.add_server(
                name,
                transport,
                target,
                args=args,
                env=env,
                headers=header,
                options=options,
                scope=scope,
            )
        except ValueError as e:
            if isinstance(e, AgentextError):
                raise
            logger.error(f"{e}")
            raise typer.Exit(code=1) from e

    key = "mcp.added" if result.created else "mcp.updated"
    typer.echo(translate(key, name=name, scope=scope, kind=transport.lower()))


@mcp_app.command("remove")
def remove(
    ctx: typer.Context,
    name: str,
    scope: str = typer.Option("project", "--scope", "-s", help="user or project"),
) -> None:
    """Remove an MCP server registration."""
    with _exit_on_error():
        result = ServerRegistry(_settings(ctx)).remove_server(name, scope=scope)
    key = "mcp.removed" if result.removed else "mcp.not_found"
    typer.echo(translate(key, name=name, scope=scope))


@mcp_app.command("list")
def list_servers(ctx: typer.Context) -> None:
    """List configured MCP servers."""
    with _exit_on_error():
        servers = ServerRegistry(_settings(ctx)).list_servers()
    if not servers:
        typer.echo(translate("mcp.none_configured"))
        return
    typer.echo(translate("mcp.list_header"))
    for registration, scope in servers:
        typer.echo(
            translate(
                "mcp.list_entry",
                name=registration.name,
                target=registration.target,
                kind=registration.kind.value,
                scope=scope.value,
            )
        )


def main() -> None:
    app(prog_name="agentext")


if __name__ == "__main__":
    main()
