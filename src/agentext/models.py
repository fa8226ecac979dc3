from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union, cast

from agentext.exceptions import ValidationFailedError
from agentext.internal_config import ARCHIVE_SUFFIXES

JsonMap = dict[str, object]


def _as_string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _as_string_map(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        str(key): str(item)
        for key, item in value.items()
        if isinstance(item, (str, int, float))
    }


def _server_args(name: str, value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"Server {name!r} has 'args' that is not a list")
    return [str(item) for item in value if isinstance(item, (str, int, float))]


class SettingScope(str, Enum):
    USER = "User"
    WORKSPACE = "Workspace"


class UpdateState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING_FOR_UPDATES = "checking for updates"
    UPDATING = "updating"
    UPDATE_AVAILABLE = "update available"
    UPDATED = "updated"
    UPDATED_NEEDS_RESTART = "updated, needs restart"
    ERROR = "error"
    UP_TO_DATE = "up to date"


class TransportKind(str, Enum):
    STDIO = "stdio"
    SSE = "sse"
    HTTP = "http"


@dataclass(frozen=True)
class StdioTransport:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    kind = TransportKind.STDIO

    def to_dict(self) -> JsonMap:
        data: JsonMap = {"command": self.command}
        if self.args:
            data["args"] = list(self.args)
        if self.env:
            data["env"] = dict(self.env)
        return data


@dataclass(frozen=True)
class SseTransport:
    url: str
    headers: dict[str, str] = field(default_factory=dict)

    kind = TransportKind.SSE

    def to_dict(self) -> JsonMap:
        data: JsonMap = {"url": self.url}
        if self.headers:
            data["headers"] = dict(self.headers)
        return data


@dataclass(frozen=True)
class HttpTransport:
    http_url: str
    headers: dict[str, str] = field(default_factory=dict)

    kind = TransportKind.HTTP

    def to_dict(self) -> JsonMap:
        data: JsonMap = {"httpUrl": self.http_url}
        if self.headers:
            data["headers"] = dict(self.headers)
        return data


Transport = Union[StdioTransport, SseTransport, HttpTransport]


@dataclass(frozen=True)
class ServerOptions:
    timeout: int | None = None
    trust: bool | None = None
    description: str | None = None
    include_tools: list[str] | None = None
    exclude_tools: list[str] | None = None

    def to_dict(self) -> JsonMap:
        data: JsonMap = {}
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.trust is not None:
            data["trust"] = self.trust
        if self.description is not None:
            data["description"] = self.description
        if self.include_tools is not None:
            data["includeTools"] = list(self.include_tools)
        if self.exclude_tools is not None:
            data["excludeTools"] = list(self.exclude_tools)
        return data

    @classmethod
    def from_dict(cls, data: JsonMap) -> ServerOptions:
        timeout = data.get("timeout")
        trust = data.get("trust")
        description = data.get("description")
        return cls(
            timeout=int(timeout) if isinstance(timeout, (int, float)) else None,
            trust=trust if isinstance(trust, bool) else None,
            description=description if isinstance(description, str) else None,
            include_tools=(
                _as_string_list(data["includeTools"]) if "includeTools" in data else None
            ),
            exclude_tools=(
                _as_string_list(data["excludeTools"]) if "excludeTools" in data else None
            ),
        )


@dataclass(frozen=True)
class ServerRegistration:
    """A named server descriptor; exactly one transport per registration."""

    name: str
    transport: Transport
    options: ServerOptions = field(default_factory=ServerOptions)

    @property
    def kind(self) -> TransportKind:
        return self.transport.kind

    @property
    def target(self) -> str:
        if isinstance(self.transport, StdioTransport):
            return " ".join([self.transport.command, *self.transport.args])
        if isinstance(self.transport, SseTransport):
            return self.transport.url
        return self.transport.http_url

    def to_dict(self) -> JsonMap:
        data = self.transport.to_dict()
        data.update(self.options.to_dict())
        return data

    @classmethod
    def from_dict(cls, name: str, data: JsonMap) -> ServerRegistration:
        transport: Transport
        if isinstance(data.get("httpUrl"), str):
            transport = HttpTransport(
                http_url=cast(str, data["httpUrl"]),
                headers=_as_string_map(data.get("headers")),
            )
        elif isinstance(data.get("url"), str):
            transport = SseTransport(
                url=cast(str, data["url"]),
                headers=_as_string_map(data.get("headers")),
            )
        elif isinstance(data.get("command"), str):
            transport = StdioTransport(
                command=cast(str, data["command"]),
                args=_server_args(name, data.get("args")),
                env=_as_string_map(data.get("env")),
            )
        else:
            raise ValueError(
                f"Server {name!r} declares none of 'command', 'url' or 'httpUrl'"
            )
        return cls(name=name, transport=transport, options=ServerOptions.from_dict(data))


@dataclass(frozen=True)
class ExtensionSetting:
    """A value the extension asks the user for at install time."""

    name: str
    env_var: str
    description: str = ""
    sensitive: bool = False
    default: str | None = None

    @classmethod
    def from_dict(cls, data: JsonMap) -> ExtensionSetting:
        name = str(data.get("name", ""))
        default = data.get("default")
        return cls(
            name=name,
            env_var=str(data.get("envVar", "")) or name.upper().replace(" ", "_"),
            description=str(data.get("description", "")),
            sensitive=bool(data.get("sensitive", False)),
            default=str(default) if default is not None else None,
        )


@dataclass(frozen=True)
class ExtensionManifest:
    name: str
    version: str
    context_file_name: str | list[str] | None = None
    mcp_servers: dict[str, ServerRegistration] = field(default_factory=dict)
    settings: list[ExtensionSetting] = field(default_factory=list)
    exclude_tools: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: JsonMap) -> ExtensionManifest:
        context_file_name = data.get("contextFileName")
        if isinstance(context_file_name, list):
            context_file_name = _as_string_list(context_file_name)
        elif not isinstance(context_file_name, str):
            context_file_name = None

        servers = data.get("mcpServers")
        mcp_servers: dict[str, ServerRegistration] = {}
        if isinstance(servers, dict):
            for server_name, server_data in servers.items():
                if isinstance(server_data, dict):
                    mcp_servers[str(server_name)] = ServerRegistration.from_dict(
                        str(server_name), cast(JsonMap, server_data)
                    )

        settings = data.get("settings")
        return cls(
            name=str(data.get("name", "")).strip(),
            version=str(data.get("version", "")),
            context_file_name=context_file_name,
            mcp_servers=mcp_servers,
            settings=[
                ExtensionSetting.from_dict(cast(JsonMap, item))
                for item in (settings if isinstance(settings, list) else [])
                if isinstance(item, dict)
            ],
            exclude_tools=_as_string_list(data.get("excludeTools")),
        )


@dataclass(frozen=True)
class RemoteSource:
    location: str
    ref: str | None = None
    auto_update: bool = False
    allow_pre_release: bool = False

    @property
    def kind(self) -> str:
        lowered = self.location.lower().split("?", 1)[0]
        if lowered.startswith(("http://", "https://")) and lowered.endswith(
            ARCHIVE_SUFFIXES
        ):
            return "archive"
        return "git"


@dataclass(frozen=True)
class LocalSource:
    path: str

    kind = "local"

    @property
    def location(self) -> str:
        return self.path


InstallSource = Union[RemoteSource, LocalSource]


def install_source_to_dict(source: InstallSource) -> JsonMap:
    if isinstance(source, LocalSource):
        return {"type": "local", "source": source.path}
    data: JsonMap = {"type": source.kind, "source": source.location}
    if source.ref:
        data["ref"] = source.ref
    if source.auto_update:
        data["autoUpdate"] = True
    if source.allow_pre_release:
        data["allowPreRelease"] = True
    return data


def install_source_from_dict(data: JsonMap) -> InstallSource | None:
    location = data.get("source")
    if not isinstance(location, str) or not location:
        return None
    if data.get("type") == "local":
        return LocalSource(path=location)
    ref = data.get("ref")
    return RemoteSource(
        location=location,
        ref=ref if isinstance(ref, str) else None,
        auto_update=bool(data.get("autoUpdate", False)),
        allow_pre_release=bool(data.get("allowPreRelease", False)),
    )


@dataclass
class InstalledExtension:
    name: str
    version: str
    path: Path
    manifest: ExtensionManifest
    scope: SettingScope = SettingScope.USER
    install_source: InstallSource | None = None
    context_files: list[Path] = field(default_factory=list)
    is_active: bool = True
    commit: str = ""


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailedError(self.errors)
