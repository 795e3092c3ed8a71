"""
Data models for MCP Station.

Defines Pydantic models for package records, configuration schemas,
AI tool integrations, inspection results and operation results. Records
are persisted with camelCase keys, matching the registry store layout.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_PACKAGE_ID = "default-mcp"


class PackageType(str, Enum):
    """Runtime shape of a package."""

    SIMPLE = "simple"    # manifest.json + a single script
    NODEJS = "nodejs"    # package.json, optional compile step


class ProcessState(str, Enum):
    """State of a package process. Never persisted."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class EventKind(str, Enum):
    """Channels pushed to observers."""

    OUTPUT = "output"
    WARNING = "warning"
    ERROR = "error"
    STOPPED = "stopped"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class AITool(CamelModel):
    """An AI tool integration a package can be exposed to."""

    id: str = Field(description="Tool id")
    name: str = Field(description="Display name")
    connected: bool = Field(default=False, description="Whether the tool is connected")
    requires_credentials: bool = Field(default=False, description="Tool needs stored credentials")


def default_ai_tools() -> List[AITool]:
    """Tools offered to packages that do not declare their own."""
    return [
        AITool(id="claude", name="Claude", connected=False, requires_credentials=True),
        AITool(id="cursor", name="Cursor", connected=False, requires_credentials=True),
    ]


class ConfigProperty(CamelModel):
    """A single configuration value a package declares."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    title: Optional[str] = Field(default=None, description="Display title")
    description: Optional[str] = Field(default=None, description="Help text")
    type: str = Field(default="string", description="Value type")
    default: Optional[Any] = Field(default=None, description="Default value")
    required: bool = Field(default=False, description="Value must be provided")
    positional: bool = Field(default=False, description="Pass as a positional process argument")


class ConfigSchema(CamelModel):
    """Configuration schema declared by a package (JSON-schema subset)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str = Field(default="object")
    required: List[str] = Field(default_factory=list)
    properties: Dict[str, ConfigProperty] = Field(default_factory=dict)

    @field_validator("required", mode="before")
    @classmethod
    def validate_required(cls, v: Any) -> List[str]:
        """A JSON-schema ``required`` may be omitted or null."""
        if v is None:
            return []
        return list(v)

    def required_fields(self) -> List[str]:
        """All required keys, from ``required`` and per-property flags, in order."""
        fields = list(self.required)
        for name, prop in self.properties.items():
            if prop.required and name not in fields:
                fields.append(name)
        return fields

    def missing_fields(self, settings: Optional[Dict[str, Any]]) -> List[str]:
        """Required keys that are absent or empty in ``settings``."""
        settings = settings or {}
        return [name for name in self.required_fields() if not settings.get(name)]

    def positional_fields(self) -> List[str]:
        """Keys whose values are passed as positional process arguments."""
        return [name for name, prop in self.properties.items() if prop.positional]


class PackageRecord(CamelModel):
    """One managed MCP server package."""

    id: str = Field(description="Unique package id")
    name: str = Field(description="Display name")
    description: Optional[str] = Field(default=None, description="Package description")
    version: Optional[str] = Field(default=None, description="Package version")
    type: PackageType = Field(description="Package type")
    path: Optional[str] = Field(default=None, description="Managed directory")
    main_script: Optional[str] = Field(default=None, description="Entry point relative to path")
    installed: bool = Field(default=False)
    running: bool = Field(default=False)
    is_typescript: bool = Field(default=False)
    needs_compilation: bool = Field(default=False)
    has_config: bool = Field(default=False)
    config_schema: Optional[ConfigSchema] = Field(default=None)
    ai_tools: List[AITool] = Field(default_factory=default_ai_tools)

    @field_validator("ai_tools", mode="before")
    @classmethod
    def validate_ai_tools(cls, v: Any) -> Any:
        """A null tool list falls back to the defaults."""
        if v is None:
            return default_ai_tools()
        return v

    @property
    def is_default(self) -> bool:
        """Whether this is the reserved demonstration package."""
        return self.id == DEFAULT_PACKAGE_ID

    def requires_configuration(self) -> bool:
        """Whether the package declares a configuration schema."""
        return self.has_config and self.config_schema is not None

    def missing_config_fields(self, settings: Optional[Dict[str, Any]]) -> List[str]:
        """Required configuration keys that have no value in ``settings``."""
        if not self.requires_configuration():
            return []
        return self.config_schema.missing_fields(settings)

    def connected_tools(self) -> List[AITool]:
        """Tools currently connected to this package."""
        return [tool for tool in self.ai_tools if tool.connected]

    def get_tool(self, tool_id: str) -> Optional[AITool]:
        """Find an AI tool by id."""
        for tool in self.ai_tools:
            if tool.id == tool_id:
                return tool
        return None


def default_package_record() -> PackageRecord:
    """The reserved record present in every fresh registry."""
    return PackageRecord(
        id=DEFAULT_PACKAGE_ID,
        name="Default MCP Server",
        description="Pre-installed MCP server for demonstration",
        version="1.0.0",
        type=PackageType.SIMPLE,
        path=None,
    )


class PackageDescriptor(BaseModel):
    """What the inspector learned about an extracted package directory."""

    type: Optional[PackageType] = Field(default=None, description="None means unknown")
    id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    main_script: Optional[str] = None
    dependencies: Dict[str, str] = Field(default_factory=dict)
    scripts: Dict[str, str] = Field(default_factory=dict)
    is_module: bool = Field(default=False, description="package.json declares type=module")
    is_typescript: bool = False
    needs_compilation: bool = False
    config_schema: Optional[ConfigSchema] = None
    ai_tools: Optional[List[AITool]] = None

    @property
    def is_unknown(self) -> bool:
        return self.type is None

    @property
    def has_config(self) -> bool:
        return self.config_schema is not None


class OperationResult(CamelModel):
    """Structured result returned by every registry manager operation."""

    success: bool
    message: str
    warnings: List[str] = Field(default_factory=list)
    requires_config: bool = False
    config_schema: Optional[ConfigSchema] = None
    missing_fields: List[str] = Field(default_factory=list)
    requires_credentials: bool = False
    tool_id: Optional[str] = None
    mcp_id: Optional[str] = None
    mcp_type: Optional[PackageType] = None
    has_config: Optional[bool] = None
    degraded: bool = False
    package: Optional[PackageRecord] = None

    @classmethod
    def ok(cls, message: str, **kwargs: Any) -> "OperationResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, message: str, **kwargs: Any) -> "OperationResult":
        return cls(success=False, message=message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, omitting unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PackageEvent(CamelModel):
    """Notification pushed to observers, tagged with the package id."""

    kind: EventKind
    mcp_id: str
    data: str = ""
    code: Optional[int] = None
