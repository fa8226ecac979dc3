from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

from agentext.acquisition import (
    AcquisitionPipeline,
    build_installed_extension,
    is_remote_location,
    read_install_metadata,
)
from agentext.consent import ConsentGate
from agentext.exceptions import (
    AgentextError,
    ExtensionNotFoundError,
    ManifestNotFoundError,
)
from agentext.internal_config import EXTENSIONS_KEY
from agentext.manifest import load_manifest, validate_manifest
from agentext.models import (
    ExtensionManifest,
    InstalledExtension,
    InstallSource,
    LocalSource,
    SettingScope,
    UpdateState,
    ValidationReport,
)
from agentext.settings_store import SettingsStore
from agentext.update_tracker import UpdateStateTracker

logger: logging.Logger = logging.getLogger(__name__)


def _as_name_set(value: object) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {item for item in value if isinstance(item, str)}


class ExtensionManager(object):
    """Catalog of the extensions discovered for one workspace and run."""

    def __init__(
        self,
        settings: SettingsStore,
        consent: ConsentGate,
        enabled_overrides: list[str] | None = None,
        pipeline: AcquisitionPipeline | None = None,
        tracker: UpdateStateTracker | None = None,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.consent = consent
        self.enabled_overrides = enabled_overrides
        self.pipeline = pipeline or AcquisitionPipeline(self.paths, consent)
        self.tracker = tracker or UpdateStateTracker()
        self.extensions: dict[str, InstalledExtension] = {}
        self._loaded = False

    @property
    def workspace_root(self) -> Path:
        return self.paths.workspace_root

    def _scan_scopes(self) -> list[SettingScope]:
        # workspace first so it shadows a user extension of the same name
        if self.paths.workspace_is_home():
            return [SettingScope.USER]
        return [SettingScope.WORKSPACE, SettingScope.USER]

    def load_extensions(self) -> list[InstalledExtension]:
        """Discover extensions in both scopes; one broken manifest never blocks the rest."""
        self.extensions = {}
        for scope in self._scan_scopes():
            directory = self.paths.extensions_dir(scope)
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                # staging and backup directories of an interrupted install are hidden
                if not entry.is_dir() or entry.name.startswith("."):
                    continue
                try:
                    manifest = load_manifest(entry)
                except ManifestNotFoundError as e:
                    logger.warning(f"Skipping extension in {entry}: {e}")
                    continue
                if manifest.name in self.extensions:
                    logger.warning(
                        f"Extension {manifest.name} in {entry} is shadowed by"
                        f" {self.extensions[manifest.name].path}"
                    )
                    continue
                source, commit = read_install_metadata(entry)
                self.extensions[manifest.name] = build_installed_extension(
                    entry, manifest, source, commit, scope
                )

        self._loaded = True
        self._refresh_active()
        logger.debug(f"Loaded {len(self.extensions)} extension(s)")
        return self.list_extensions()

    def _extensions_section(self, scope: SettingScope) -> dict[str, Any]:
        section = self.settings.read(scope).get(EXTENSIONS_KEY)
        return dict(section) if isinstance(section, dict) else {}

    def _overrides(self, scope: SettingScope) -> tuple[set[str], set[str]]:
        section = self._extensions_section(scope)
        return _as_name_set(section.get("disabled")), _as_name_set(section.get("enabled"))

    def _enabled_names(self) -> set[str]:
        names = set(self.extensions)
        enabled = set(names)
        # user overrides first, then workspace overrides on top
        for scope in (SettingScope.USER, SettingScope.WORKSPACE):
            disabled_set, enabled_set = self._overrides(scope)
            enabled = (enabled - disabled_set) | (enabled_set & names)

        if self.enabled_overrides is not None:
            requested = {name.lower() for name in self.enabled_overrides}
            if requested == {"none"}:
                return set()
            for name in requested - {name.lower() for name in names}:
                logger.warning(f"Extension not found: {name}")
            enabled = {name for name in enabled if name.lower() in requested}
        return enabled

    def _refresh_active(self) -> None:
        enabled = self._enabled_names()
        for name, extension in self.extensions.items():
            extension.is_active = name in enabled

    def _require(self, name: str) -> InstalledExtension:
        extension = self.extensions.get(name)
        if extension is None:
            raise ExtensionNotFoundError(f"Extension not found: {name}")
        return extension

    def _write_override(self, name: str, scope: SettingScope, enable: bool) -> None:
        section = self._extensions_section(scope)
        disabled, enabled = self._overrides(scope)
        if enable:
            disabled.discard(name)
            enabled.add(name)
        else:
            enabled.discard(name)
            disabled.add(name)
        section["disabled"] = sorted(disabled)
        section["enabled"] = sorted(enabled)
        self.settings.write(scope, EXTENSIONS_KEY, section)

    def enable_extension(self, name: str, scope: SettingScope = SettingScope.USER) -> None:
        self._require(name)
        self._write_override(name, scope, enable=True)
        self._refresh_active()
        logger.info(f'Extension "{name}" successfully enabled in {scope.value} scope.')

    def disable_extension(self, name: str, scope: SettingScope = SettingScope.USER) -> None:
        self._require(name)
        self._write_override(name, scope, enable=False)
        self._refresh_active()
        logger.info(f'Extension "{name}" successfully disabled in {scope.value} scope.')

    def _clear_stale_overrides(self, name: str) -> None:
        """Drop override rows an earlier uninstall of *name* left behind."""
        for scope in self._scan_scopes():
            disabled, enabled = self._overrides(scope)
            if name not in disabled and name not in enabled:
                continue
            section = self._extensions_section(scope)
            section["disabled"] = sorted(disabled - {name})
            section["enabled"] = sorted(enabled - {name})
            self.settings.write(scope, EXTENSIONS_KEY, section)
            logger.info(
                f"Cleared leftover enable/disable setting for {name} in {scope.value} scope"
            )

    def _find(self, identifier: str) -> InstalledExtension | None:
        extension = self.extensions.get(identifier)
        if extension is not None:
            return extension

        candidates = {identifier}
        if not is_remote_location(identifier):
            path = Path(identifier).expanduser()
            if not path.is_absolute():
                path = self.workspace_root.joinpath(path)
            candidates.add(str(path.resolve()))
        for extension in self.extensions.values():
            source = extension.install_source
            if source is not None and source.location in candidates:
                return extension
        return None

    async def install_or_update_extension(
        self, source: InstallSource, scope: SettingScope = SettingScope.USER
    ) -> InstalledExtension:
        if not self._loaded:
            self.load_extensions()

        extension = await self.pipeline.install_or_update(source, scope=scope)
        if extension.name not in self.extensions:
            self._clear_stale_overrides(extension.name)
        elif self.extensions[extension.name].scope is not scope:
            logger.warning(
                f"{extension.name} is also installed in the"
                f" {self.extensions[extension.name].scope.value} scope"
            )
        self.extensions[extension.name] = extension
        self._refresh_active()
        return extension

    async def uninstall_extension(self, identifier: str, force: bool = False) -> InstalledExtension:
        """Remove the extension matching *identifier* by name, then by install source.

        With *force*, errors while deleting the directory are ignored and the
        record is dropped anyway. Enable/disable settings are left untouched.
        """
        extension = self._find(identifier)
        if extension is None:
            raise ExtensionNotFoundError(f"Extension not found: {identifier}")

        await asyncio.to_thread(shutil.rmtree, extension.path, ignore_errors=force)
        del self.extensions[extension.name]
        self.tracker.forget(extension.name)
        logger.info(f'Extension "{extension.name}" successfully uninstalled.')
        return extension

    def load_extension_config(self, path: Path | str) -> ExtensionManifest:
        """Read a manifest without registering the extension."""
        return load_manifest(Path(path).expanduser().resolve())

    def validate_extension(self, path: Path | str) -> ValidationReport:
        root = Path(path).expanduser().resolve()
        return validate_manifest(self.load_extension_config(root), root)

    def list_extensions(self) -> list[InstalledExtension]:
        return sorted(self.extensions.values(), key=lambda extension: extension.name)

    def update_state(self, name: str) -> UpdateState:
        return self.tracker.get(name)

    async def update_extension(self, name: str, restart_required: bool = False) -> UpdateState:
        """Check *name* for an update and install it when one is available."""
        extension = self._require(name)
        if extension.install_source is None:
            logger.warning(f"{name} has no recorded install source and cannot be updated")
            return self.tracker.get(name)
        if self.tracker.is_terminal(name):
            return self.tracker.get(name)

        self.tracker.transition(name, UpdateState.CHECKING_FOR_UPDATES)
        try:
            available = await self.pipeline.check_for_update(extension)
        except (AgentextError, OSError) as e:
            logger.error(f"Could not check {name} for updates: {e}")
            return self.tracker.transition(name, UpdateState.ERROR)

        if not available:
            logger.info(f'Extension "{name}" is already up to date.')
            return self.tracker.transition(name, UpdateState.UP_TO_DATE)

        self.tracker.transition(name, UpdateState.UPDATE_AVAILABLE)
        self.tracker.transition(name, UpdateState.UPDATING)
        try:
            updated = await self.pipeline.install_or_update(
                extension.install_source, scope=extension.scope, expected_name=name
            )
        except (AgentextError, OSError) as e:
            logger.error(f"Could not update {name}: {e}")
            return self.tracker.transition(name, UpdateState.ERROR)

        self.extensions[name] = updated
        self._refresh_active()
        logger.info(
            f'Extension "{name}" successfully updated: {extension.version} -> {updated.version}.'
        )
        if restart_required and updated.is_active:
            return self.tracker.transition(name, UpdateState.UPDATED_NEEDS_RESTART)
        return self.tracker.transition(name, UpdateState.UPDATED)

    async def update_all_extensions(
        self, restart_required: bool = False, auto_update_only: bool = False
    ) -> dict[str, UpdateState]:
        results: dict[str, UpdateState] = {}
        for extension in self.list_extensions():
            source = extension.install_source
            if source is None:
                continue
            if auto_update_only and (
                isinstance(source, LocalSource) or not source.auto_update
            ):
                continue
            results[extension.name] = await self.update_extension(
                extension.name, restart_required=restart_required
            )
        return results
