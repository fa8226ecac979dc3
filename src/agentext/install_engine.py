from __future__ import annotations

import os
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Protocol

import requests


class DownloadSession(Protocol):
    def get(
        self,
        url: str,
        *,
        stream: bool,
        timeout: tuple[int, int],
    ) -> requests.Response: ...


RunCommand = Callable[..., subprocess.CompletedProcess[str]]


def _run_git(
    args: list[str],
    *,
    timeout: float | None,
    run_command: RunCommand,
) -> subprocess.CompletedProcess[str]:
    cmd = ["git", *args]
    process = run_command(
        cmd,
        capture_output=True,
        check=False,
        text=True,
        timeout=timeout,
    )
    if process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            cmd,
            process.stdout,
            process.stderr,
        )
    return process


def run_git_clone(
    *,
    location: str,
    target_dir: Path,
    ref: str | None = None,
    timeout: float | None = None,
    run_command: RunCommand = subprocess.run,
) -> str:
    """Clone *location* into *target_dir*, check out *ref* and return the commit."""
    _run_git(
        ["clone", "--quiet", location, str(target_dir)],
        timeout=timeout,
        run_command=run_command,
    )
    if ref:
        _run_git(
            ["-C", str(target_dir), "checkout", "--quiet", ref],
            timeout=timeout,
            run_command=run_command,
        )
    process = _run_git(
        ["-C", str(target_dir), "rev-parse", "HEAD"],
        timeout=timeout,
        run_command=run_command,
    )
    return f"{process.stdout}".strip()


def run_git_ls_remote(
    *,
    location: str,
    ref: str | None = None,
    timeout: float | None = None,
    run_command: RunCommand = subprocess.run,
) -> str:
    """Return the commit *ref* (default ``HEAD``) points to on the remote.

    Annotated tags are listed twice; the peeled ``^{}`` entry carries the
    commit, the plain entry the tag object, so the peeled one wins.
    """
    process = _run_git(
        ["ls-remote", location, ref or "HEAD"],
        timeout=timeout,
        run_command=run_command,
    )
    refs: dict[str, str] = {}
    for line in f"{process.stdout}".splitlines():
        parts = line.split()
        if len(parts) == 2:
            refs.setdefault(parts[1], parts[0])

    wanted = ref or "HEAD"
    for name in (
        f"refs/tags/{wanted}^{{}}",
        f"refs/tags/{wanted}",
        f"refs/heads/{wanted}",
        f"{wanted}^{{}}",
        wanted,
    ):
        if name in refs:
            return refs[name]
    return ""


def stream_download_to_target(
    *,
    session: DownloadSession,
    url: str,
    target_path: Path,
    temp_prefix: str,
    timeout: tuple[int, int],
) -> Path:
    with tempfile.TemporaryDirectory(prefix=temp_prefix) as tmp_dir:
        file_path = Path(tmp_dir, target_path.name)

        with open(file_path, "wb") as output:
            response: requests.Response = session.get(
                url,
                stream=True,
                timeout=timeout,
            )
            response.raise_for_status()

            for chunk in response.iter_content(chunk_size=1024 * 8):
                if chunk:
                    output.write(chunk)
            output.flush()
            os.fsync(output.fileno())

        shutil.move(file_path, target_path)
        return target_path


def _ensure_within(root: Path, member_name: str) -> None:
    destination = root.joinpath(member_name).resolve()
    if destination != root and root not in destination.parents:
        raise ValueError(f"Archive member escapes extraction directory: {member_name}")


def extract_archive(archive_path: Path, target_dir: Path) -> Path:
    """Extract a zip or tarball and return the extension root inside it."""
    root = Path(target_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)

    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path, "r") as archive:
            for name in archive.namelist():
                _ensure_within(root, name)
            archive.extractall(root)
    else:
        with tarfile.open(archive_path, "r:*") as archive:
            for member in archive.getmembers():
                if member.issym() or member.islnk():
                    raise ValueError(f"Archive member is a link: {member.name}")
                _ensure_within(root, member.name)
            if hasattr(tarfile, "data_filter"):
                archive.extractall(root, filter="data")
            else:
                archive.extractall(root)

    # archives usually wrap everything in one top-level directory
    entries = list(root.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return root


def copy_extension_tree(source: Path, target_dir: Path) -> Path:
    shutil.copytree(
        source,
        target_dir,
        symlinks=True,
        ignore=shutil.ignore_patterns(".git"),
    )
    return target_dir
