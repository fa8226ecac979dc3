from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

# settings documents may contain comments and trailing commas
import json5

from agentext.agent_paths import AgentPaths
from agentext.exceptions import InvalidScopeError, SettingsWriteError
from agentext.internal_config import DEFAULT_SETTINGS
from agentext.models import SettingScope

logger: logging.Logger = logging.getLogger(__name__)

SCOPE_TOKENS: dict[str, SettingScope] = {
    "user": SettingScope.USER,
    "workspace": SettingScope.WORKSPACE,
    "project": SettingScope.WORKSPACE,
}


def parse_scope(token: str, accepted: tuple[str, ...] = ("user", "workspace")) -> SettingScope:
    """Map a CLI scope token onto a SettingScope, rejecting anything else."""
    normalized = f"{token}".strip().lower()
    if normalized not in accepted:
        raise InvalidScopeError(
            f"Invalid scope {token!r}. Please use one of: {', '.join(accepted)}"
        )
    return SCOPE_TOKENS[normalized]


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge *override* over *base* key by key; maps recurse, other values replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_path(document: dict[str, Any], key: str, default: Any = None) -> Any:
    node: Any = document
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def _set_path(document: dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


class SettingsStore(object):
    """Two-scope settings documents with a workspace-over-user merged view."""

    def __init__(self, paths: AgentPaths) -> None:
        self.paths = paths
        self._documents: dict[SettingScope, dict[str, Any]] = {
            SettingScope.USER: self._load(self.paths.settings_file(SettingScope.USER)),
            SettingScope.WORKSPACE: {},
        }
        # a workspace at the home directory shares the user document
        if not self.paths.workspace_is_home():
            self._documents[SettingScope.WORKSPACE] = self._load(
                self.paths.settings_file(SettingScope.WORKSPACE)
            )

    @classmethod
    def for_workspace(
        cls, workspace_root: Path, user_root: Path | None = None
    ) -> SettingsStore:
        return cls(AgentPaths(workspace_root=workspace_root, user_root=user_root))

    @staticmethod
    def _load(path: Path) -> dict[str, Any]:
        if not path.is_file():
            return {}
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        try:
            document = json5.loads(text)
        except ValueError as e:
            raise SettingsWriteError(f"Could not parse settings file {path}: {e}") from e
        if not isinstance(document, dict):
            raise SettingsWriteError(f"Settings file {path} does not contain an object")
        return document

    def path_for(self, scope: SettingScope) -> Path:
        return self.paths.settings_file(scope)

    def read(self, scope: SettingScope) -> dict[str, Any]:
        return copy.deepcopy(self._documents[scope])

    def merged(self) -> dict[str, Any]:
        result = deep_merge(DEFAULT_SETTINGS, self._documents[SettingScope.USER])
        return deep_merge(result, self._documents[SettingScope.WORKSPACE])

    def get(self, key: str, default: Any = None) -> Any:
        return get_path(self.merged(), key, default)

    def write(self, scope: SettingScope, key: str, value: Any) -> None:
        """Persist *value* under *key* in *scope*; on failure nothing changes."""
        if scope is SettingScope.WORKSPACE and self.paths.workspace_is_home():
            raise InvalidScopeError(
                "The workspace is the home directory; use the user scope instead"
            )
        updated = copy.deepcopy(self._documents[scope])
        _set_path(updated, key, copy.deepcopy(value))
        self._persist(self.path_for(scope), updated)
        self._documents[scope] = updated
        logger.debug(f"Wrote {key} to {scope.value} settings ({self.path_for(scope)})")

    @staticmethod
    def _persist(path: Path, document: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
            )
        except OSError as e:
            raise SettingsWriteError(f"Could not write settings file {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise SettingsWriteError(f"Could not write settings file {path}: {e}") from e
