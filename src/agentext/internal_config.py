from __future__ import annotations

import platform
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version


def _get_package_version(name: str) -> str:
    """Return the installed version of *name*, or ``"0"`` if not found."""
    try:
        return _pkg_version(name)
    except PackageNotFoundError:
        return "0"


AGENTEXT_VERSION = _get_package_version("agentext")

DEFAULT_USER_AGENT = (
    f"agentext/{AGENTEXT_VERSION}"
    f" ({platform.system()}; {platform.machine()}; compatible)"
)

# on-disk layout shared by the user and workspace scopes
SETTINGS_DIR_NAME = ".agent"
SETTINGS_FILE_NAME = "settings.json"
EXTENSIONS_DIR_NAME = "extensions"
EXTENSION_MANIFEST_FILE = "extension.json"
INSTALL_METADATA_FILE = ".agentext-install.json"
EXTENSION_ENV_FILE = ".env"

# settings keys
MCP_SERVERS_KEY = "mcpServers"
EXTENSIONS_KEY = "extensions"

DEFAULT_SETTINGS: dict[str, object] = {
    "mcpServers": {},
    "extensions": {"disabled": [], "enabled": []},
}

NETWORK_TIMEOUT_SECONDS = 120
HTTP_STREAM_CONNECT_TIMEOUT_SECONDS = 10

HTTP_RETRY_TOTAL = 3
HTTP_RETRY_BACKOFF_FACTOR = 1
HTTP_RETRY_STATUS_FORCELIST = [429, 500, 502, 503, 504]
HTTP_RETRY_ALLOWED_METHODS = ["HEAD", "GET", "OPTIONS"]

ARCHIVE_SUFFIXES = (".zip", ".tar.gz", ".tgz")
