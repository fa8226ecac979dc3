from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from agentext.exceptions import InvalidScopeError
from agentext.internal_config import MCP_SERVERS_KEY
from agentext.models import (
    HttpTransport,
    ServerOptions,
    ServerRegistration,
    SettingScope,
    SseTransport,
    StdioTransport,
    Transport,
    TransportKind,
)
from agentext.settings_store import SettingsStore, parse_scope

logger: logging.Logger = logging.getLogger(__name__)

SERVER_SCOPE_TOKENS = ("user", "project")


@dataclass(frozen=True)
class AddServerResult:
    created: bool


@dataclass(frozen=True)
class RemoveServerResult:
    removed: bool


def parse_env_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Parse ``KEY=VALUE`` entries; entries without both parts are skipped."""
    env: dict[str, str] = {}
    for pair in pairs or []:
        key, _, value = pair.partition("=")
        if key and value:
            env[key] = value
    return env


def parse_header_pairs(pairs: list[str] | None) -> dict[str, str]:
    """Parse ``Header: value`` entries; entries without both parts are skipped."""
    headers: dict[str, str] = {}
    for pair in pairs or []:
        key, _, value = pair.partition(":")
        if key.strip() and value.strip():
            headers[key.strip()] = value.strip()
    return headers


def build_transport(
    transport: str,
    target: str,
    args: list[str] | None = None,
    env: list[str] | None = None,
    headers: list[str] | None = None,
) -> Transport:
    try:
        kind = TransportKind(f"{transport}".lower())
    except ValueError:
        raise ValueError(
            f"Unknown transport {transport!r}; use one of:"
            f" {', '.join(kind.value for kind in TransportKind)}"
        ) from None

    if kind is TransportKind.SSE:
        return SseTransport(url=target, headers=parse_header_pairs(headers))
    if kind is TransportKind.HTTP:
        return HttpTransport(http_url=target, headers=parse_header_pairs(headers))
    return StdioTransport(
        command=target,
        args=[f"{arg}" for arg in args or []],
        env=parse_env_pairs(env),
    )


class ServerRegistry(object):
    """Add, remove and list named server registrations per settings scope."""

    def __init__(self, settings: SettingsStore) -> None:
        self.settings = settings

    def _scope(self, token: str) -> SettingScope:
        scope = parse_scope(token, accepted=SERVER_SCOPE_TOKENS)
        if scope is SettingScope.WORKSPACE and self.settings.paths.workspace_is_home():
            raise InvalidScopeError(
                "Please use --scope user to edit settings in the home directory."
            )
        return scope

    def _servers(self, scope: SettingScope) -> dict[str, Any]:
        servers = self.settings.read(scope).get(MCP_SERVERS_KEY)
        return dict(servers) if isinstance(servers, dict) else {}

    def add_server(
        self,
        name: str,
        transport: str,
        target: str,
        args: list[str] | None = None,
        env: list[str] | None = None,
        headers: list[str] | None = None,
        options: ServerOptions | None = None,
        scope: str = "project",
    ) -> AddServerResult:
        """Create or replace the registration *name* in *scope*."""
        settings_scope = self._scope(scope)
        registration = ServerRegistration(
            name=name,
            transport=build_transport(transport, target, args, env, headers),
            options=options or ServerOptions(),
        )

        servers = self._servers(settings_scope)
        created = name not in servers
        if not created:
            logger.info(f'MCP server "{name}" is already configured within {scope} settings.')

        servers[name] = registration.to_dict()
        self.settings.write(settings_scope, MCP_SERVERS_KEY, servers)

        if created:
            logger.info(
                f'MCP server "{name}" added to {scope} settings. ({registration.kind.value})'
            )
        else:
            logger.info(f'MCP server "{name}" updated in {scope} settings.')
        return AddServerResult(created=created)

    def remove_server(self, name: str, scope: str = "project") -> RemoveServerResult:
        settings_scope = self._scope(scope)
        servers = self._servers(settings_scope)
        if name not in servers:
            logger.info(f'Server "{name}" not found in {scope} settings.')
            return RemoveServerResult(removed=False)

        del servers[name]
        self.settings.write(settings_scope, MCP_SERVERS_KEY, servers)
        logger.info(f'Server "{name}" removed from {scope} settings.')
        return RemoveServerResult(removed=True)

    def get_server(self, name: str, scope: str) -> ServerRegistration | None:
        data = self._servers(self._scope(scope)).get(name)
        if not isinstance(data, dict):
            return None
        return ServerRegistration.from_dict(name, data)

    def list_servers(self) -> list[tuple[ServerRegistration, SettingScope]]:
        """Merged registrations, each tagged with the scope that defines it."""
        result: dict[str, tuple[ServerRegistration, SettingScope]] = {}
        for scope in (SettingScope.USER, SettingScope.WORKSPACE):
            for name, data in self._servers(scope).items():
                if not isinstance(data, dict):
                    continue
                try:
                    result[name] = (ServerRegistration.from_dict(name, data), scope)
                except ValueError as e:
                    logger.warning(f"Ignoring server {name} in {scope.value} settings: {e}")
        return [result[name] for name in sorted(result)]
