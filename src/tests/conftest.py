from __future__ import annotations

from pathlib import Path

import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("agentext")
    group.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="also run tests that shell out to a real git binary",
    )
    group.addoption(
        "--only-slow",
        action="store_true",
        default=False,
        help="run nothing but the tests marked as slow",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "slow: needs external tools such as git")


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--only-slow"):
        kept = [item for item in items if "slow" in item.keywords]
        dropped = [item for item in items if "slow" not in item.keywords]
        if dropped:
            config.hook.pytest_deselected(items=dropped)
        items[:] = kept
        return

    if config.getoption("--slow"):
        return

    skip_slow = pytest.mark.skip(reason="pass --slow to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def isolated_agent_home(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep every test away from the real ``~/.agent`` directory."""
    home = tmp_path_factory.mktemp("agent-home")
    monkeypatch.setenv("AGENTEXT_HOME", str(home))
    return home
