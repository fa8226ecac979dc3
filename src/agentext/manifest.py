"""Extension manifest loading and validation.

A manifest is the ``extension.json`` document at the root of an extension
directory. Loading is lenient (json5, so comments are tolerated); validation
checks that every declared context file exists and that the version looks like
a semantic version.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import json5

from agentext.exceptions import ManifestNotFoundError
from agentext.internal_config import EXTENSION_MANIFEST_FILE
from agentext.models import ExtensionManifest, ValidationReport

logger: logging.Logger = logging.getLogger(__name__)

# semver 2.0.0 grammar, with the single leading "v" or "=" that most tools accept
SEMVER_PATTERN = re.compile(
    r"^[v=]?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# extension names double as directory names
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def manifest_path(extension_root: Path) -> Path:
    return Path(extension_root).joinpath(EXTENSION_MANIFEST_FILE)


def load_manifest(extension_root: Path) -> ExtensionManifest:
    """Read the manifest of the extension rooted at *extension_root*."""
    path = manifest_path(extension_root)
    if not path.is_file():
        raise ManifestNotFoundError(f"No {EXTENSION_MANIFEST_FILE} found in {extension_root}")

    try:
        data = json5.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ManifestNotFoundError(f"Could not parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestNotFoundError(f"{path} does not contain a JSON object")

    try:
        manifest = ExtensionManifest.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ManifestNotFoundError(f"Invalid manifest {path}: {e}") from e

    if not manifest.name:
        raise ManifestNotFoundError(f"{path} does not declare an extension name")
    return manifest


def context_file_names(manifest: ExtensionManifest) -> list[str]:
    if manifest.context_file_name is None:
        return []
    if isinstance(manifest.context_file_name, str):
        return [manifest.context_file_name]
    return list(manifest.context_file_name)


def resolve_context_files(manifest: ExtensionManifest, extension_root: Path) -> list[Path]:
    root = Path(extension_root).resolve()
    return [root.joinpath(name).resolve() for name in context_file_names(manifest)]


def is_valid_semver(version: str) -> bool:
    return bool(SEMVER_PATTERN.match(f"{version}".strip()))


def validate_manifest(manifest: ExtensionManifest, extension_root: Path) -> ValidationReport:
    """Check context files and version; never mutates the manifest."""
    report = ValidationReport()
    root = Path(extension_root).resolve()

    if not NAME_PATTERN.match(manifest.name):
        report.errors.append(
            f"Invalid extension name '{manifest.name}': use letters, numbers,"
            " dots, dashes and underscores only."
        )

    missing = [
        name for name in context_file_names(manifest) if not root.joinpath(name).exists()
    ]
    if missing:
        report.errors.append(
            f"The following context files referenced in {EXTENSION_MANIFEST_FILE}"
            f" are missing: {', '.join(missing)}"
        )

    if not is_valid_semver(manifest.version):
        report.warnings.append(
            f"Warning: Version '{manifest.version}' does not appear to be standard"
            " semver (e.g., 1.0.0)."
        )

    return report


def create_extension_scaffold(path: Path) -> Path:
    """Create a new extension directory holding a minimal manifest."""
    target = Path(path)
    if target.exists():
        raise FileExistsError(f"Path already exists: {target}")
    target.mkdir(parents=True)
    manifest = {"name": target.resolve().name, "version": "1.0.0"}
    manifest_path(target).write_text(json.dumps(manifest, indent=2) + "\n", encoding="utf-8")
    logger.info(f"Created new extension in {target}")
    return target
