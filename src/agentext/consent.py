from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import typer

from agentext.exceptions import ConsentDeniedError
from agentext.manifest import context_file_names
from agentext.models import (
    ExtensionManifest,
    ExtensionSetting,
    InstallSource,
    TransportKind,
)

logger: logging.Logger = logging.getLogger(__name__)

INSTALL_WARNING_MESSAGE = (
    "The extension you are about to install may have been created by a third-party"
    " developer and sourced from a public repository. Extensions are not vetted,"
    " and they can run commands and read files on your machine through the"
    " servers they register. Only install extensions from sources you trust."
)


class ConsentGate(Protocol):
    async def request_install_consent(
        self, source: InstallSource, manifest: ExtensionManifest
    ) -> bool: ...

    async def request_setting_value(self, setting: ExtensionSetting) -> str: ...


def build_consent_summary(source: InstallSource, manifest: ExtensionManifest) -> str:
    """Describe what installing *manifest* from *source* will add."""
    lines = [
        f'Installing extension "{manifest.name}" (v{manifest.version})'
        f" from {source.location}."
    ]
    if manifest.mcp_servers:
        lines.append("This extension will run the following MCP servers:")
        for name, server in manifest.mcp_servers.items():
            location = "local" if server.kind is TransportKind.STDIO else "remote"
            lines.append(f"  * {name} ({location}): {server.target}")
    context_files = context_file_names(manifest)
    if context_files:
        lines.append(
            f"This extension will append info to your context using: {', '.join(context_files)}"
        )
    if manifest.exclude_tools:
        lines.append(
            f"This extension will exclude the following core tools: {', '.join(manifest.exclude_tools)}"
        )
    lines.append("")
    lines.append(INSTALL_WARNING_MESSAGE)
    return "\n".join(lines)


class NonInteractiveConsent(object):
    """Fixed-policy consent for scripted use; the decision is logged, not asked."""

    def __init__(self, approve: bool = False) -> None:
        self.approve = approve

    async def request_install_consent(
        self, source: InstallSource, manifest: ExtensionManifest
    ) -> bool:
        logger.warning(build_consent_summary(source, manifest))
        if not self.approve:
            logger.warning("Installation requires consent; re-run with --consent to accept.")
        return self.approve

    async def request_setting_value(self, setting: ExtensionSetting) -> str:
        if setting.default is not None:
            logger.info(f"Using default value for setting {setting.name}")
            return setting.default
        raise ConsentDeniedError(
            f"Setting {setting.name!r} ({setting.env_var}) requires a value;"
            " run the install interactively to provide it"
        )


class InteractiveConsent(object):
    """Ask the user on the terminal."""

    async def request_install_consent(
        self, source: InstallSource, manifest: ExtensionManifest
    ) -> bool:
        typer.echo(build_consent_summary(source, manifest))
        return await asyncio.to_thread(
            typer.confirm, "Do you want to continue?", default=False
        )

    async def request_setting_value(self, setting: ExtensionSetting) -> str:
        label = setting.name
        if setting.description:
            label = f"{setting.name} ({setting.description})"
        value = await asyncio.to_thread(
            typer.prompt,
            label,
            default=setting.default,
            hide_input=setting.sensitive,
        )
        return f"{value}"
