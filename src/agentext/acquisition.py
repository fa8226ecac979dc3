"""Resolve install sources into extension directories.

Every install is materialized into a throwaway staging directory first (git
clone, archive download or local copy). Only after the manifest validates and
the consent gate agrees is the staged tree copied next to the final location
and swapped in with renames, so a failed install never touches a previously
installed version of the same extension.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path

import requests
from packaging.version import InvalidVersion, Version

from agentext.agent_paths import AgentPaths
from agentext.consent import ConsentGate
from agentext.exceptions import (
    ConsentDeniedError,
    InstallConflictError,
    InvalidLocalOptionsError,
    NetworkError,
    SourceNotFoundError,
    ValidationFailedError,
)
from agentext.http_session import create_session
from agentext.install_engine import (
    RunCommand,
    copy_extension_tree,
    extract_archive,
    run_git_clone,
    run_git_ls_remote,
    stream_download_to_target,
)
from agentext.internal_config import (
    EXTENSION_ENV_FILE,
    HTTP_STREAM_CONNECT_TIMEOUT_SECONDS,
    INSTALL_METADATA_FILE,
    NETWORK_TIMEOUT_SECONDS,
)
from agentext.manifest import load_manifest, resolve_context_files, validate_manifest
from agentext.models import (
    ExtensionManifest,
    InstalledExtension,
    InstallSource,
    LocalSource,
    RemoteSource,
    SettingScope,
    install_source_from_dict,
    install_source_to_dict,
)

logger: logging.Logger = logging.getLogger(__name__)

REMOTE_PREFIXES = ("http://", "https://", "git@", "ssh://", "sso://", "git+", "github:")


def is_remote_location(location: str) -> bool:
    return f"{location}".strip().startswith(REMOTE_PREFIXES)


def parse_install_source(
    source: str,
    ref: str | None = None,
    auto_update: bool = False,
    allow_pre_release: bool = False,
) -> InstallSource:
    """Classify a user supplied source string as remote or local."""
    if is_remote_location(source):
        return RemoteSource(
            location=source.strip(),
            ref=ref or None,
            auto_update=auto_update,
            allow_pre_release=allow_pre_release,
        )

    # checked before the filesystem is consulted at all
    if ref or auto_update:
        raise InvalidLocalOptionsError(
            "--ref and --auto-update are not applicable for local extensions."
        )

    path = Path(source).expanduser()
    if not path.exists():
        raise SourceNotFoundError(f"Install source not found: {source}")
    return LocalSource(path=str(path.resolve()))


def clone_location(location: str) -> str:
    """Expand the ``git+`` prefix and ``github:owner/repo`` shorthand."""
    if location.startswith("git+"):
        return location[4:]
    if location.startswith("github:"):
        repository = location[len("github:") :].strip("/")
        if not repository.endswith(".git"):
            repository = f"{repository}.git"
        return f"https://github.com/{repository}"
    return location


def write_install_metadata(root: Path, source: InstallSource, commit: str = "") -> None:
    data = install_source_to_dict(source)
    if commit:
        data["commit"] = commit
    root.joinpath(INSTALL_METADATA_FILE).write_text(
        json.dumps(data, indent=2) + "\n", encoding="utf-8"
    )


def read_install_metadata(root: Path) -> tuple[InstallSource | None, str]:
    path = root.joinpath(INSTALL_METADATA_FILE)
    if not path.is_file():
        return None, ""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable install metadata {path}: {e}")
        return None, ""
    if not isinstance(data, dict):
        return None, ""
    return install_source_from_dict(data), str(data.get("commit", ""))


def read_env_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    if not path.is_file():
        return values
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if value.startswith('"'):
            try:
                value = json.loads(value)
            except ValueError:
                value = value.strip('"')
        values[key.strip()] = value
    return values


def write_env_file(path: Path, values: dict[str, str]) -> None:
    lines = [f"{key}={json.dumps(value)}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def build_installed_extension(
    root: Path,
    manifest: ExtensionManifest,
    source: InstallSource | None,
    commit: str = "",
    scope: SettingScope = SettingScope.USER,
) -> InstalledExtension:
    return InstalledExtension(
        name=manifest.name,
        version=manifest.version,
        path=root,
        manifest=manifest,
        scope=scope,
        install_source=source,
        context_files=resolve_context_files(manifest, root),
        commit=commit,
    )


def is_newer_version(candidate: str, installed: str, allow_pre_release: bool) -> bool:
    try:
        candidate_version = Version(candidate)
        installed_version = Version(installed)
    except InvalidVersion:
        return candidate != installed
    if candidate_version.is_prerelease and not allow_pre_release:
        return False
    return candidate_version > installed_version


class AcquisitionPipeline(object):
    """Materialize, validate, gate and swap in one extension per call."""

    def __init__(
        self,
        paths: AgentPaths,
        consent: ConsentGate,
        session: requests.Session | None = None,
        timeout: float = NETWORK_TIMEOUT_SECONDS,
        run_command: RunCommand = subprocess.run,
    ) -> None:
        self.paths = paths
        self.consent = consent
        self.session = session
        self.timeout = timeout
        self.run_command = run_command
        self._in_progress: set[str] = set()

    def _session(self) -> requests.Session:
        if self.session is None:
            self.session = create_session()
        return self.session

    def _claim(self, key: str) -> None:
        if key in self._in_progress:
            raise InstallConflictError(f"An install of {key} is already in progress")
        self._in_progress.add(key)

    async def install_or_update(
        self,
        source: InstallSource,
        scope: SettingScope = SettingScope.USER,
        expected_name: str | None = None,
    ) -> InstalledExtension:
        """Install *source*, replacing an installed extension of the same name.

        *expected_name* pins the manifest name when updating an existing
        extension, since an installed extension cannot be renamed in place.
        """
        claimed = [f"source:{source.location}"]
        self._claim(claimed[0])
        try:
            with tempfile.TemporaryDirectory(prefix="agentext-staging.") as tmp_dir:
                staging_root, commit = await self._materialize(source, Path(tmp_dir))

                manifest = load_manifest(staging_root)
                report = validate_manifest(manifest, staging_root)
                for warning in report.warnings:
                    logger.warning(warning)
                report.raise_for_errors()
                if expected_name is not None and manifest.name != expected_name:
                    raise ValidationFailedError(
                        [
                            f"Source now declares extension '{manifest.name}',"
                            f" expected '{expected_name}'"
                        ]
                    )

                self._claim(f"name:{manifest.name}")
                claimed.append(f"name:{manifest.name}")

                if not await self.consent.request_install_consent(source, manifest):
                    raise ConsentDeniedError(
                        f"Installation of {manifest.name} cancelled: consent was not given."
                    )

                target = self.paths.extensions_dir(scope).joinpath(manifest.name)
                await self._resolve_settings(manifest, staging_root, target)
                write_install_metadata(staging_root, source, commit)
                await asyncio.to_thread(self._swap_into_place, staging_root, target)
        finally:
            for key in claimed:
                self._in_progress.discard(key)

        logger.info(f"Installed {manifest.name} ({manifest.version}) into {target}")
        return build_installed_extension(target, manifest, source, commit, scope)

    async def _materialize(self, source: InstallSource, work_dir: Path) -> tuple[Path, str]:
        staging = work_dir.joinpath("extension")

        if isinstance(source, LocalSource):
            local_path = Path(source.path)
            if not local_path.is_dir():
                raise SourceNotFoundError(f"Install source not found: {source.path}")
            logger.info(f"Copying extension from {local_path}")
            await asyncio.to_thread(copy_extension_tree, local_path, staging)
            return staging, ""

        if source.kind == "archive":
            root = await self._download_archive(source.location, work_dir, staging)
            return root, ""

        location = clone_location(source.location)
        logger.info(f"Cloning {location}" + (f" at {source.ref}" if source.ref else ""))
        try:
            commit = await asyncio.to_thread(
                run_git_clone,
                location=location,
                target_dir=staging,
                ref=source.ref,
                timeout=self.timeout,
                run_command=self.run_command,
            )
        except subprocess.TimeoutExpired as e:
            raise NetworkError(
                f"Timed out after {self.timeout}s while cloning {location}"
            ) from e
        except subprocess.CalledProcessError as e:
            raise NetworkError(
                f"Failed to clone {location}: {f'{e.stderr}'.strip() or e}"
            ) from e
        except OSError as e:
            raise NetworkError(f"Failed to clone {location}: {e}") from e
        return staging, commit

    async def _download_archive(self, url: str, work_dir: Path, staging: Path) -> Path:
        archive_name = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or "extension"
        logger.info(f"Downloading {url}")
        try:
            archive_path = await asyncio.to_thread(
                stream_download_to_target,
                session=self._session(),
                url=url,
                target_path=work_dir.joinpath(archive_name),
                temp_prefix="agentext-download.",
                timeout=(HTTP_STREAM_CONNECT_TIMEOUT_SECONDS, int(self.timeout)),
            )
        except requests.Timeout as e:
            raise NetworkError(f"Timed out while downloading {url}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Failed to download {url}: {e}") from e

        try:
            return await asyncio.to_thread(extract_archive, archive_path, staging)
        except (ValueError, OSError) as e:
            raise ValidationFailedError([f"Could not extract {archive_name}: {e}"]) from e

    async def _resolve_settings(
        self, manifest: ExtensionManifest, staging_root: Path, target: Path
    ) -> None:
        if not manifest.settings:
            return
        existing = read_env_file(target.joinpath(EXTENSION_ENV_FILE))
        values: dict[str, str] = {}
        for setting in manifest.settings:
            if setting.env_var in existing:
                values[setting.env_var] = existing[setting.env_var]
                continue
            values[setting.env_var] = await self.consent.request_setting_value(setting)
        write_env_file(staging_root.joinpath(EXTENSION_ENV_FILE), values)

    def _swap_into_place(self, staging_root: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex[:8]
        incoming = target.parent.joinpath(f".{target.name}.incoming-{token}")
        backup = target.parent.joinpath(f".{target.name}.previous-{token}")

        # copy onto the destination filesystem so the swap itself is two renames
        try:
            shutil.copytree(staging_root, incoming, symlinks=True)
        except OSError as e:
            shutil.rmtree(incoming, ignore_errors=True)
            raise InstallConflictError(f"Could not stage {target.name}: {e}") from e

        had_previous = target.exists()
        try:
            if had_previous:
                os.rename(target, backup)
            os.rename(incoming, target)
        except OSError as e:
            if had_previous and backup.exists() and not target.exists():
                os.rename(backup, target)
            shutil.rmtree(incoming, ignore_errors=True)
            raise InstallConflictError(f"Could not replace {target}: {e}") from e

        if had_previous:
            shutil.rmtree(backup, ignore_errors=True)

    async def check_for_update(self, extension: InstalledExtension) -> bool:
        """Return True when the recorded source offers something newer."""
        source = extension.install_source
        if source is None:
            raise ValueError(f"{extension.name} has no recorded install source")

        if isinstance(source, RemoteSource) and source.kind == "git":
            location = clone_location(source.location)
            try:
                remote_commit = await asyncio.to_thread(
                    run_git_ls_remote,
                    location=location,
                    ref=source.ref,
                    timeout=self.timeout,
                    run_command=self.run_command,
                )
            except subprocess.TimeoutExpired as e:
                raise NetworkError(f"Timed out while checking {location}") from e
            except (subprocess.CalledProcessError, OSError) as e:
                raise NetworkError(f"Failed to check {location}: {e}") from e
            return bool(remote_commit) and remote_commit != extension.commit

        if isinstance(source, LocalSource):
            candidate = load_manifest(Path(source.path))
            return is_newer_version(candidate.version, extension.version, True)

        with tempfile.TemporaryDirectory(prefix="agentext-check.") as tmp_dir:
            work_dir = Path(tmp_dir)
            root = await self._download_archive(
                source.location, work_dir, work_dir.joinpath("extension")
            )
            candidate = load_manifest(root)
        return is_newer_version(
            candidate.version, extension.version, source.allow_pre_release
        )
