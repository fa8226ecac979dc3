from __future__ import annotations

import os
from pathlib import Path

from agentext.internal_config import (
    EXTENSIONS_DIR_NAME,
    SETTINGS_DIR_NAME,
    SETTINGS_FILE_NAME,
)
from agentext.models import SettingScope


def resolve_user_root() -> Path:
    """Resolve the user-level agent directory, honoring ``AGENTEXT_HOME``."""
    explicit_root = os.environ.get("AGENTEXT_HOME", "").strip()
    if explicit_root:
        return Path(explicit_root).expanduser().resolve()
    return Path.home().joinpath(SETTINGS_DIR_NAME).resolve()


def resolve_workspace_root(workspace_root: Path) -> Path:
    return Path(workspace_root).expanduser().resolve().joinpath(SETTINGS_DIR_NAME)


class AgentPaths(object):
    """Per-scope locations of settings documents and extension directories."""

    def __init__(self, workspace_root: Path, user_root: Path | None = None) -> None:
        self.workspace_root = Path(workspace_root).expanduser().resolve()
        self.user_root = (
            Path(user_root).expanduser().resolve() if user_root else resolve_user_root()
        )

    def scope_root(self, scope: SettingScope) -> Path:
        if scope is SettingScope.USER:
            return self.user_root
        return resolve_workspace_root(self.workspace_root)

    def settings_file(self, scope: SettingScope) -> Path:
        return self.scope_root(scope).joinpath(SETTINGS_FILE_NAME)

    def extensions_dir(self, scope: SettingScope) -> Path:
        return self.scope_root(scope).joinpath(EXTENSIONS_DIR_NAME)

    def workspace_is_home(self) -> bool:
        """True when the workspace scope resolves to the user scope documents."""
        return self.settings_file(SettingScope.WORKSPACE) == self.settings_file(
            SettingScope.USER
        )
