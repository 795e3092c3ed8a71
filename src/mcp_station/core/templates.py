"""
Script templates written by the installer.

Generated files start with GENERATED_MARKER so the installer can tell
its own output apart from files shipped by a package.
"""

import json
import posixpath
from typing import Any, Dict

GENERATED_MARKER = "// Generated by mcp-station"
FALLBACK_MARKER = f"{GENERATED_MARKER}: fallback"
FORWARDER_MARKER = f"{GENERATED_MARKER}: forwarder"

_HEARTBEAT_TEMPLATE = """{marker}
/**
 * {title}
 * {summary}
 */

console.log('{title} starting up...');

setTimeout(() => {{
  console.log('Initializing MCP components...');
}}, 1000);

setTimeout(() => {{
  console.log('MCP Server started successfully');
  console.log('Ready to process requests...');
}}, 2000);

let counter = 0;
const interval = setInterval(() => {{
  counter++;
  console.log(`MCP Server heartbeat #${{counter}}`);

  if (counter % 5 === 0) {{
    console.log('System status: normal');
  }}

  if (counter >= {max_beats}) {{
    clearInterval(interval);
    console.log('MCP Server shutting down normally...');
    process.exit(0);
  }}
}}, {interval_ms});

function shutdown(signal) {{
  clearInterval(interval);
  console.log(`MCP Server received ${{signal}}, shutting down...`);
  process.exit(0);
}}

process.on('SIGINT', () => shutdown('SIGINT'));
process.on('SIGTERM', () => shutdown('SIGTERM'));
"""

_EMERGENCY_TEMPLATE = """{marker}
// Entry point could not be resolved during installation.
console.log('MCP Server placeholder running');
const interval = setInterval(() => console.log('MCP Server heartbeat'), 5000);
process.on('SIGINT', () => {{ clearInterval(interval); process.exit(0); }});
process.on('SIGTERM', () => {{ clearInterval(interval); process.exit(0); }});
"""


def _js_text(value: str) -> str:
    """Strip characters that would end a single-quoted string or the header comment."""
    return value.replace("\\", "").replace("'", "").replace("*/", "").replace("\n", " ")


def heartbeat_script(
    title: str = "Default MCP Server",
    summary: str = "Basic MCP server for demonstration",
    marker: str = GENERATED_MARKER,
    max_beats: int = 100,
    interval_ms: int = 3000,
) -> str:
    """A runnable script that logs a heartbeat until it is signalled."""
    return _HEARTBEAT_TEMPLATE.format(
        marker=marker,
        title=_js_text(title),
        summary=_js_text(summary),
        max_beats=max_beats,
        interval_ms=interval_ms,
    )


def fallback_script(package_name: str) -> str:
    """Heartbeat used when no entry point could be found for a package."""
    return heartbeat_script(
        title=f"{package_name} (fallback)",
        summary="No entry point was found during installation; this placeholder keeps the package runnable",
        marker=FALLBACK_MARKER,
    )


def emergency_script() -> str:
    """Minimal runnable written when normalization left no entry file."""
    return _EMERGENCY_TEMPLATE.format(marker=FALLBACK_MARKER)


def relative_module_reference(from_dir: str, target: str) -> str:
    """
    Relative module specifier from one directory to a file, POSIX style.

    ``./`` is prepended when the path does not already climb upwards, since
    bare specifiers would be resolved from node_modules.
    """
    reference = posixpath.relpath(target, from_dir)
    if not reference.startswith("."):
        reference = f"./{reference}"
    return reference


def forwarder_script(reference: str, es_module: bool = False) -> str:
    """A file that loads ``reference`` and does nothing else."""
    quoted = json.dumps(reference)
    if es_module:
        body = f"import {quoted};"
    else:
        body = f"require({quoted});"
    return f"#!/usr/bin/env node\n{FORWARDER_MARKER}\n{body}\n"


def default_manifest(package_id: str, name: str, description: str, main: str) -> Dict[str, Any]:
    """Manifest written next to the synthesized default server."""
    return {
        "id": package_id,
        "name": name,
        "version": "1.0.0",
        "description": description,
        "main": main,
        "aiTools": [
            {"id": "claude", "name": "Claude", "requiresCredentials": True},
            {"id": "cursor", "name": "Cursor", "requiresCredentials": True},
        ],
    }


def is_generated_fallback(content: str) -> bool:
    """Whether file content is a placeholder the installer wrote itself."""
    return content.startswith(FALLBACK_MARKER) or f"\n{FALLBACK_MARKER}" in content[:200]
