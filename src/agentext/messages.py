from __future__ import annotations

import logging

logger: logging.Logger = logging.getLogger(__name__)

# English catalog of the strings the command line shows
MESSAGES: dict[str, str] = {
    "extensions.none_installed": "No extensions installed.",
    "extensions.list_entry": "{name} (v{version}) - {status} ({state})",
    "extensions.status_active": "active",
    "extensions.status_disabled": "disabled",
    "extensions.installed": 'Extension "{name}" installed successfully and enabled.',
    "extensions.install_failed": "Failed to install extension from {source}: {error}",
    "extensions.consent_flag_used": (
        "You have consented to the install warning by passing --consent."
    ),
    "extensions.uninstalled": 'Extension "{name}" successfully uninstalled.',
    "extensions.uninstall_failed": 'Failed to uninstall "{identifier}": {error}',
    "extensions.uninstall_missing_args": (
        "Please include at least one extension name or source to uninstall."
    ),
    "extensions.enabled": 'Extension "{name}" successfully enabled in {scope} scope.',
    "extensions.disabled": 'Extension "{name}" successfully disabled in {scope} scope.',
    "extensions.update_missing_args": "Either an extension name or --all must be given.",
    "extensions.update_conflicting_args": "Use either an extension name or --all, not both.",
    "extensions.update_result": "{name}: {state}",
    "extensions.no_updates": "No extensions to update.",
    "extensions.validated": 'Extension "{name}" has been successfully validated.',
    "extensions.validation_failed": "Extension at {path} failed validation.",
    "extensions.created": "Successfully created new extension at {path}.",
    "mcp.none_configured": "No MCP servers configured.",
    "mcp.list_header": "Configured MCP servers:",
    "mcp.list_entry": "{name}: {target} ({kind}) [{scope}]",
    "mcp.added": 'MCP server "{name}" added to {scope} settings. ({kind})',
    "mcp.updated": 'MCP server "{name}" updated in {scope} settings. ({kind})',
    "mcp.removed": 'Server "{name}" removed from {scope} settings.',
    "mcp.not_found": 'Server "{name}" not found in {scope} settings.',
    "cli.invalid_log_level": "Invalid log level {level!r}; use one of: {choices}",
}


def translate(key: str, **variables: object) -> str:
    """Look up *key* and fill in *variables*; unknown keys come back unchanged."""
    template = MESSAGES.get(key)
    if template is None:
        logger.debug(f"No message for key {key}")
        return key
    try:
        return template.format(**variables)
    except (KeyError, IndexError) as e:
        logger.debug(f"Missing variable {e} for message {key}")
        return template
