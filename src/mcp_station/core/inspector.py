"""
Package inspection.

Classifies an extracted package directory by the files at its root:

* ``package.json``  -> nodejs package (optional TypeScript build)
* ``manifest.json`` -> simple package (manifest plus a single script)
* anything else     -> unknown, which callers must reject

Inspection only reads files. A malformed manifest raises
ClassificationError unless a sibling manifest classifies the package.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from mcp_station.core.exceptions import ClassificationError
from mcp_station.core.models import AITool, ConfigSchema, PackageDescriptor, PackageType
from mcp_station.utils.logging import get_logger

logger = get_logger(__name__)

PACKAGE_DESCRIPTOR_FILE = "package.json"
MANIFEST_FILE = "manifest.json"
BUILD_CONFIG_FILE = "tsconfig.json"
SMITHERY_FILE = "smithery.yaml"
COMPILED_OUTPUT_DIR = "dist"
DEFAULT_NODE_ENTRY = "index.js"


def has_build_config(directory: Path) -> bool:
    """Whether a TypeScript build configuration sits at the package root."""
    return (directory / BUILD_CONFIG_FILE).is_file()


def needs_compilation(directory: Path) -> bool:
    """TypeScript packages need compiling when dist/ is missing or empty."""
    if not has_build_config(directory):
        return False
    dist = directory / COMPILED_OUTPUT_DIR
    return not dist.is_dir() or not any(dist.iterdir())


def resolve_node_entry(package_json: Dict[str, Any]) -> str:
    """
    Pick the entry point declared by a package.json.

    The first ``bin`` alias wins, then ``main``, then ``index.js``.
    """
    bin_field = package_json.get("bin")
    if isinstance(bin_field, str) and bin_field:
        return bin_field
    if isinstance(bin_field, dict):
        for value in bin_field.values():
            if isinstance(value, str) and value:
                return value
    main = package_json.get("main")
    if isinstance(main, str) and main:
        return main
    return DEFAULT_NODE_ENTRY


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ClassificationError(
            f"Malformed {path.name}: {e}",
            error_code="malformed_manifest",
            details={"file": str(path)},
        )
    except (OSError, UnicodeDecodeError) as e:
        raise ClassificationError(
            f"Cannot read {path.name}: {e}",
            error_code="unreadable_manifest",
            details={"file": str(path)},
        )
    if not isinstance(data, dict):
        raise ClassificationError(
            f"{path.name} must contain a JSON object",
            error_code="malformed_manifest",
            details={"file": str(path)},
        )
    return data


def _parse_config_schema(raw: Any, source: Path) -> Optional[ConfigSchema]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ClassificationError(
            f"Configuration schema in {source.name} must be an object",
            error_code="malformed_config_schema",
            details={"file": str(source)},
        )
    try:
        return ConfigSchema.model_validate(raw)
    except PydanticValidationError as e:
        raise ClassificationError(
            f"Invalid configuration schema in {source.name}: {e}",
            error_code="malformed_config_schema",
            details={"file": str(source)},
        )


def _read_smithery_schema(directory: Path) -> Optional[ConfigSchema]:
    """Configuration schema from smithery.yaml (startCommand.configSchema)."""
    path = directory / SMITHERY_FILE
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ClassificationError(
            f"Malformed {SMITHERY_FILE}: {e}",
            error_code="malformed_manifest",
            details={"file": str(path)},
        )
    if not isinstance(data, dict):
        return None
    start_command = data.get("startCommand")
    if not isinstance(start_command, dict):
        return None
    return _parse_config_schema(start_command.get("configSchema"), path)


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def inspect_node_package(directory: Path) -> PackageDescriptor:
    """Describe a package that ships a package.json."""
    package_json = _read_json(directory / PACKAGE_DESCRIPTOR_FILE)
    is_typescript = has_build_config(directory)

    return PackageDescriptor(
        type=PackageType.NODEJS,
        name=_optional_str(package_json.get("name")),
        version=_optional_str(package_json.get("version")),
        description=_optional_str(package_json.get("description")),
        main_script=resolve_node_entry(package_json),
        dependencies=_string_map(package_json.get("dependencies")),
        scripts=_string_map(package_json.get("scripts")),
        is_module=package_json.get("type") == "module",
        is_typescript=is_typescript,
        needs_compilation=needs_compilation(directory),
        config_schema=_read_smithery_schema(directory),
    )


def inspect_simple_package(directory: Path) -> PackageDescriptor:
    """Describe a package that ships a manifest.json."""
    path = directory / MANIFEST_FILE
    manifest = _read_json(path)

    ai_tools: Optional[List[AITool]] = None
    raw_tools = manifest.get("aiTools")
    if raw_tools is not None:
        if not isinstance(raw_tools, list):
            raise ClassificationError(
                f"aiTools in {MANIFEST_FILE} must be a list",
                error_code="malformed_manifest",
                details={"file": str(path)},
            )
        try:
            ai_tools = [AITool.model_validate(tool) for tool in raw_tools]
        except PydanticValidationError as e:
            raise ClassificationError(
                f"Invalid aiTools in {MANIFEST_FILE}: {e}",
                error_code="malformed_manifest",
                details={"file": str(path)},
            )

    return PackageDescriptor(
        type=PackageType.SIMPLE,
        id=_optional_str(manifest.get("id")),
        name=_optional_str(manifest.get("name")),
        version=_optional_str(manifest.get("version")),
        description=_optional_str(manifest.get("description")),
        main_script=_optional_str(manifest.get("main")),
        is_typescript=has_build_config(directory),
        config_schema=_parse_config_schema(manifest.get("configSchema"), path),
        ai_tools=ai_tools,
    )


def classify(directory: Path) -> PackageDescriptor:
    """
    Classify an extracted package directory.

    Args:
        directory: Package root

    Returns:
        Descriptor of the package; ``descriptor.is_unknown`` when no
        manifest was found

    Raises:
        ClassificationError: If a manifest was found but none could be parsed
    """
    checks = [
        (PACKAGE_DESCRIPTOR_FILE, inspect_node_package),
        (MANIFEST_FILE, inspect_simple_package),
    ]
    errors: List[ClassificationError] = []

    for filename, inspect in checks:
        if not (directory / filename).is_file():
            continue
        try:
            descriptor = inspect(directory)
        except ClassificationError as e:
            logger.warning(f"Could not classify {directory} via {filename}: {e.message}")
            errors.append(e)
            continue
        logger.debug(f"Classified {directory} as {descriptor.type.value} via {filename}")
        return descriptor

    if errors:
        first = errors[0]
        raise ClassificationError(
            first.message,
            error_code=first.error_code,
            details={"errors": [error.to_dict() for error in errors]},
        )

    logger.debug(f"No manifest found in {directory}")
    return PackageDescriptor(type=None)
