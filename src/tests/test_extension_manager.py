from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess
from pathlib import Path

import pytest

from agentext.acquisition import AcquisitionPipeline, parse_install_source
from agentext.exceptions import ExtensionNotFoundError, ManifestNotFoundError
from agentext.extension_manager import ExtensionManager
from agentext.models import (
    ExtensionManifest,
    ExtensionSetting,
    InstallSource,
    RemoteSource,
    SettingScope,
    UpdateState,
)
from agentext.settings_store import SettingsStore


class _Consent:
    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.asked: list[str] = []

    async def request_install_consent(
        self, source: InstallSource, manifest: ExtensionManifest
    ) -> bool:
        self.asked.append(manifest.name)
        return self.approve

    async def request_setting_value(self, setting: ExtensionSetting) -> str:
        return setting.default or ""


class _FakeGit:
    """Stands in for ``git``: clones copy a fixture directory."""

    def __init__(self, repository: Path) -> None:
        self.repository = repository
        self.commit = "c1"
        self.remote_commit = "c1"
        self.fail_ls_remote = False
        self.calls: list[list[str]] = []

    def __call__(self, cmd: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
        self.calls.append(cmd)
        stdout = ""
        if cmd[1] == "clone":
            shutil.copytree(self.repository, cmd[-1])
        elif "rev-parse" in cmd:
            stdout = f"{self.commit}\n"
        elif cmd[1] == "ls-remote":
            if self.fail_ls_remote:
                return subprocess.CompletedProcess(cmd, 2, stdout="", stderr="offline")
            ref_name = "HEAD" if cmd[3] == "HEAD" else f"refs/heads/{cmd[3]}"
            stdout = f"{self.remote_commit}\t{ref_name}\n"
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


def _write_extension(directory: Path, name: str, version: str = "1.0.0") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    directory.joinpath("extension.json").write_text(
        json.dumps({"name": name, "version": version}), encoding="utf-8"
    )
    return directory


@pytest.fixture
def settings(tmp_path: Path) -> SettingsStore:
    return SettingsStore.for_workspace(tmp_path / "project", user_root=tmp_path / "user")


@pytest.fixture
def fake_git(tmp_path: Path) -> _FakeGit:
    return _FakeGit(_write_extension(tmp_path / "repo", "remote-ext", "2.0.0"))


def _manager(
    settings: SettingsStore,
    fake_git: _FakeGit | None = None,
    enabled_overrides: list[str] | None = None,
) -> ExtensionManager:
    consent = _Consent()
    pipeline = AcquisitionPipeline(
        settings.paths, consent, run_command=fake_git or subprocess.run
    )
    return ExtensionManager(
        settings, consent, enabled_overrides=enabled_overrides, pipeline=pipeline
    )


def _user_dir(settings: SettingsStore, name: str) -> Path:
    return settings.paths.extensions_dir(SettingScope.USER).joinpath(name)


def _workspace_dir(settings: SettingsStore, name: str) -> Path:
    return settings.paths.extensions_dir(SettingScope.WORKSPACE).joinpath(name)


def _active(manager: ExtensionManager) -> dict[str, bool]:
    return {extension.name: extension.is_active for extension in manager.list_extensions()}


def test_load_extensions_from_both_scopes(
    settings: SettingsStore, caplog: pytest.LogCaptureFixture
) -> None:
    _write_extension(_user_dir(settings, "alpha"), "alpha")
    _write_extension(_user_dir(settings, "shared"), "shared", "1.0.0")
    _write_extension(_workspace_dir(settings, "shared"), "shared", "2.0.0")
    _write_extension(_user_dir(settings, ".shared.incoming-1234"), "shared", "3.0.0")
    broken = _user_dir(settings, "broken")
    broken.mkdir(parents=True)
    broken.joinpath("extension.json").write_text("{ nope", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        extensions = _manager(settings).load_extensions()

    assert [(e.name, e.version, e.scope) for e in extensions] == [
        ("alpha", "1.0.0", SettingScope.USER),
        ("shared", "2.0.0", SettingScope.WORKSPACE),
    ]
    assert all(extension.is_active for extension in extensions)
    assert "Skipping extension" in caplog.text
    assert "shadowed" in caplog.text


def test_wrongly_typed_manifest_does_not_block_discovery(
    settings: SettingsStore, caplog: pytest.LogCaptureFixture
) -> None:
    _write_extension(_user_dir(settings, "good"), "good")
    bad = _user_dir(settings, "bad")
    bad.mkdir(parents=True)
    bad.joinpath("extension.json").write_text(
        json.dumps(
            {
                "name": "bad",
                "version": "1.0.0",
                "mcpServers": {"s": {"command": "x", "args": 5}},
            }
        ),
        encoding="utf-8",
    )

    with caplog.at_level(logging.WARNING):
        extensions = _manager(settings).load_extensions()

    assert [extension.name for extension in extensions] == ["good"]
    assert "'args' that is not a list" in caplog.text


def test_workspace_override_wins_over_user_override(settings: SettingsStore) -> None:
    _write_extension(_user_dir(settings, "alpha"), "alpha")
    _write_extension(_user_dir(settings, "beta"), "beta")
    settings.write(SettingScope.USER, "extensions", {"disabled": ["alpha"], "enabled": ["beta"]})
    settings.write(
        SettingScope.WORKSPACE, "extensions", {"disabled": ["beta"], "enabled": ["alpha"]}
    )

    manager = _manager(settings)
    manager.load_extensions()

    assert _active(manager) == {"alpha": True, "beta": False}


def test_allow_list_restricts_active_extensions(
    settings: SettingsStore, caplog: pytest.LogCaptureFixture
) -> None:
    _write_extension(_user_dir(settings, "alpha"), "alpha")
    _write_extension(_user_dir(settings, "beta"), "beta")
    settings.write(SettingScope.USER, "extensions.disabled", ["beta"])

    manager = _manager(settings, enabled_overrides=["ALPHA", "beta", "ghost"])
    with caplog.at_level(logging.WARNING):
        manager.load_extensions()

    assert _active(manager) == {"alpha": True, "beta": False}
    assert "Extension not found: ghost" in caplog.text

    manager = _manager(settings, enabled_overrides=["none"])
    manager.load_extensions()
    assert _active(manager) == {"alpha": False, "beta": False}


def test_disable_then_enable_round_trip(settings: SettingsStore) -> None:
    _write_extension(_user_dir(settings, "alpha"), "alpha")
    manager = _manager(settings)
    manager.load_extensions()

    manager.disable_extension("alpha", SettingScope.WORKSPACE)
    assert _active(manager) == {"alpha": False}
    assert settings.read(SettingScope.WORKSPACE)["extensions"] == {
        "disabled": ["alpha"],
        "enabled": [],
    }

    manager.enable_extension("alpha", SettingScope.WORKSPACE)
    assert _active(manager) == {"alpha": True}

    reloaded = _manager(settings)
    reloaded.load_extensions()
    assert _active(reloaded) == {"alpha": True}


def test_enable_unknown_extension_fails(settings: SettingsStore) -> None:
    manager = _manager(settings)
    manager.load_extensions()

    with pytest.raises(ExtensionNotFoundError):
        manager.enable_extension("ghost")
    with pytest.raises(ExtensionNotFoundError):
        manager.disable_extension("ghost", SettingScope.WORKSPACE)
    assert not settings.path_for(SettingScope.USER).exists()


def test_uninstall_by_name_keeps_overrides(settings: SettingsStore) -> None:
    path = _write_extension(_user_dir(settings, "alpha"), "alpha")
    manager = _manager(settings)
    manager.load_extensions()
    manager.disable_extension("alpha")

    removed = asyncio.run(manager.uninstall_extension("alpha"))

    assert removed.name == "alpha"
    assert not path.exists()
    assert manager.list_extensions() == []
    assert settings.get("extensions.disabled") == ["alpha"]
    with pytest.raises(ExtensionNotFoundError):
        asyncio.run(manager.uninstall_extension("alpha"))


def test_uninstall_by_install_source(settings: SettingsStore, fake_git: _FakeGit) -> None:
    manager = _manager(settings, fake_git)
    source = parse_install_source("https://example.com/acme/remote-ext.git")
    asyncio.run(manager.install_or_update_extension(source))

    removed = asyncio.run(
        manager.uninstall_extension("https://example.com/acme/remote-ext.git")
    )

    assert removed.name == "remote-ext"
    assert not _user_dir(settings, "remote-ext").exists()


def test_uninstall_local_install_by_path(settings: SettingsStore, tmp_path: Path) -> None:
    source_dir = _write_extension(tmp_path / "src" / "local-ext", "local-ext")
    manager = _manager(settings)
    asyncio.run(manager.install_or_update_extension(parse_install_source(str(source_dir))))

    removed = asyncio.run(manager.uninstall_extension(str(source_dir)))

    assert removed.name == "local-ext"


def test_relative_identifier_resolves_against_workspace_root(
    settings: SettingsStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source_dir = _write_extension(tmp_path / "project" / "exts" / "local-ext", "local-ext")
    manager = _manager(settings)
    asyncio.run(manager.install_or_update_extension(parse_install_source(str(source_dir))))
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)

    removed = asyncio.run(manager.uninstall_extension("exts/local-ext"))

    assert removed.name == "local-ext"


def _snapshot(settings: SettingsStore) -> dict[str, object]:
    state: dict[str, object] = {}
    for scope in (SettingScope.USER, SettingScope.WORKSPACE):
        settings_file = settings.path_for(scope)
        state[f"{scope.value} settings"] = (
            settings_file.read_bytes() if settings_file.exists() else None
        )
        directory = settings.paths.extensions_dir(scope)
        state[f"{scope.value} extensions"] = (
            sorted(entry.name for entry in directory.iterdir()) if directory.is_dir() else []
        )
    return state


def test_install_then_uninstall_restores_previous_state(
    settings: SettingsStore, tmp_path: Path, fake_git: _FakeGit
) -> None:
    settings.write(SettingScope.USER, "mcpServers", {"files": {"command": "node"}})
    settings.write(SettingScope.WORKSPACE, "extensions.disabled", ["other"])
    _write_extension(_user_dir(settings, "resident"), "resident")
    source_dir = _write_extension(tmp_path / "src" / "local-ext", "local-ext")
    before = _snapshot(settings)

    manager = _manager(settings, fake_git)
    for location in (str(source_dir), "https://example.com/acme/remote-ext.git"):
        source = parse_install_source(location)
        extension = asyncio.run(manager.install_or_update_extension(source))
        assert _snapshot(settings) != before
        asyncio.run(manager.uninstall_extension(location))

        assert _snapshot(settings) == before
        assert not extension.path.exists()
    assert [extension.name for extension in manager.list_extensions()] == ["resident"]


def test_reinstall_after_uninstall_starts_enabled(
    settings: SettingsStore, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    source_dir = _write_extension(tmp_path / "src" / "alpha", "alpha")
    manager = _manager(settings)
    asyncio.run(manager.install_or_update_extension(parse_install_source(str(source_dir))))
    manager.disable_extension("alpha")
    asyncio.run(manager.uninstall_extension("alpha"))

    with caplog.at_level(logging.INFO):
        extension = asyncio.run(
            manager.install_or_update_extension(parse_install_source(str(source_dir)))
        )

    assert extension.is_active is True
    assert settings.get("extensions.disabled") == []
    assert "Cleared leftover" in caplog.text


def test_install_remote_with_ref_and_auto_update(
    settings: SettingsStore, fake_git: _FakeGit
) -> None:
    manager = _manager(settings, fake_git)
    source = parse_install_source(
        "https://example.com/acme/remote-ext.git", ref="v2", auto_update=True
    )

    extension = asyncio.run(manager.install_or_update_extension(source))

    assert extension.is_active is True
    assert extension.install_source == RemoteSource(
        "https://example.com/acme/remote-ext.git", ref="v2", auto_update=True
    )
    assert manager.update_state("remote-ext") is UpdateState.UNKNOWN
    assert [e.name for e in manager.list_extensions()] == ["remote-ext"]


def test_update_extension_installs_newer_commit(
    settings: SettingsStore, fake_git: _FakeGit, tmp_path: Path
) -> None:
    manager = _manager(settings, fake_git)
    source = parse_install_source("https://example.com/acme/remote-ext.git")
    asyncio.run(manager.install_or_update_extension(source))

    _write_extension(tmp_path / "repo", "remote-ext", "2.1.0")
    fake_git.commit = fake_git.remote_commit = "c2"
    state = asyncio.run(manager.update_extension("remote-ext", restart_required=True))

    assert state is UpdateState.UPDATED_NEEDS_RESTART
    assert manager.extensions["remote-ext"].version == "2.1.0"
    assert manager.extensions["remote-ext"].commit == "c2"

    calls = len(fake_git.calls)
    assert asyncio.run(manager.update_extension("remote-ext")) is state
    assert len(fake_git.calls) == calls


def test_update_reports_up_to_date_and_errors(
    settings: SettingsStore, fake_git: _FakeGit
) -> None:
    manager = _manager(settings, fake_git)
    asyncio.run(
        manager.install_or_update_extension(
            parse_install_source("https://example.com/acme/remote-ext.git")
        )
    )

    assert asyncio.run(manager.update_extension("remote-ext")) is UpdateState.UP_TO_DATE

    manager.tracker.reset()
    fake_git.fail_ls_remote = True
    assert asyncio.run(manager.update_extension("remote-ext")) is UpdateState.ERROR


def test_update_without_install_source_stays_unknown(
    settings: SettingsStore, caplog: pytest.LogCaptureFixture
) -> None:
    _write_extension(_user_dir(settings, "manual"), "manual")
    manager = _manager(settings)
    manager.load_extensions()

    with caplog.at_level(logging.WARNING):
        state = asyncio.run(manager.update_extension("manual"))

    assert state is UpdateState.UNKNOWN
    assert "no recorded install source" in caplog.text
    assert asyncio.run(manager.update_all_extensions()) == {}


def test_update_all_can_limit_to_auto_update(
    settings: SettingsStore, fake_git: _FakeGit, tmp_path: Path
) -> None:
    manager = _manager(settings, fake_git)
    asyncio.run(
        manager.install_or_update_extension(
            parse_install_source("https://example.com/acme/remote-ext.git")
        )
    )
    source_dir = _write_extension(tmp_path / "src" / "local-ext", "local-ext")
    asyncio.run(manager.install_or_update_extension(parse_install_source(str(source_dir))))

    assert asyncio.run(manager.update_all_extensions(auto_update_only=True)) == {}
    assert asyncio.run(manager.update_all_extensions()) == {
        "local-ext": UpdateState.UP_TO_DATE,
        "remote-ext": UpdateState.UP_TO_DATE,
    }


def test_validate_extension(settings: SettingsStore, tmp_path: Path) -> None:
    root = _write_extension(tmp_path / "candidate", "candidate", "0.1")
    manager = _manager(settings)

    report = manager.validate_extension(root)

    assert report.ok
    assert len(report.warnings) == 1
    assert manager.load_extension_config(root).name == "candidate"
    assert manager.list_extensions() == []
    with pytest.raises(ManifestNotFoundError):
        manager.validate_extension(tmp_path / "missing")
