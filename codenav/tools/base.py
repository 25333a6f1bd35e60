"""
Tool System Base Classes

This module defines the core abstractions for the tool system:
- ToolParameter: Defines tool input parameters (derived from the query model)
- ToolOutcome: What a tool returns for one successful query
- Tool: Abstract base class for all tools
- ToolRegistry: Central registry for tool management
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel

from ..models import BaseQuery


class ToolParameter(BaseModel):
    """Defines a single parameter for a tool"""
    name: str
    type: str  # "string", "integer", "number", "boolean", "object", "array"
    description: str = ""
    required: bool = True
    default: Any = None
    items: Optional[Dict[str, Any]] = None
    enum: Optional[List[Any]] = None


@dataclass
class ToolOutcome:
    """
    Result of running one query.

    `count` drives classification (0 means empty); `hints` are tool-specific
    suggestions such as pagination cues or identifiers for the next tool.
    """
    data: Dict[str, Any]
    count: int
    hints: List[str] = field(default_factory=list)


def _schema_type(prop: Dict[str, Any]) -> Dict[str, Any]:
    if "type" in prop:
        return prop
    for option in prop.get("anyOf", []):
        if option.get("type") and option.get("type") != "null":
            return option
    return {"type": "string"}


def parameters_from_model(model: Type[BaseQuery]) -> List[ToolParameter]:
    schema = model.model_json_schema()
    required = set(schema.get("required", []))
    params: List[ToolParameter] = []
    for name, prop in schema.get("properties", {}).items():
        if name == "tool":
            continue
        typed = _schema_type(prop)
        params.append(ToolParameter(
            name=name,
            type=typed.get("type", "string"),
            description=prop.get("description", "") or "",
            required=name in required,
            default=prop.get("default"),
            items=typed.get("items"),
            enum=typed.get("enum"),
        ))
    return params


class Tool(ABC):
    """
    Abstract base class for all tools.

    A tool validates nothing itself: the bulk executor hands it an already
    validated query model. Tools belong to a family ("local" or "lsp") that
    decides the per-batch query cap.
    """

    family: str = "local"
    query_model: Type[BaseQuery] = BaseQuery

    def __init__(self):
        self.name: str = ""
        self.description: str = ""
        self.parameters: List[ToolParameter] = parameters_from_model(self.query_model)

    @abstractmethod
    async def run(self, query: BaseQuery) -> ToolOutcome:
        """
        Execute one validated query.

        Args:
            query: Instance of `query_model`

        Returns:
            ToolOutcome with the payload and item count

        Raises:
            ToolError: Any path, execution or protocol failure
        """

    async def execute(self, input_data: str) -> str:
        """
        Execute a JSON tool call (single query or {"queries": [...]}).

        Returns:
            The batch envelope serialized as JSON
        """
        from ..bulk import BulkExecutor, extract_queries

        try:
            payload = json.loads(input_data) if input_data and input_data.strip() else {}
        except json.JSONDecodeError as exc:
            raise ValueError(f"Tool input must be JSON: {exc.msg}")
        envelope = await BulkExecutor.from_config().run(self, extract_queries(payload))
        return json.dumps(envelope.to_dict(), ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert tool to dictionary format for LLM.

        Returns:
            Dict with tool metadata and a JSON schema for one query
        """
        return {
            "name": self.name,
            "description": self.description,
            "family": self.family,
            "parameters": [p.model_dump(exclude_none=True) for p in self.parameters],
            "inputSchema": _build_tool_parameters_schema(self),
        }


def _build_tool_parameters_schema(tool: "Tool") -> Dict[str, Any]:
    query_schema: Dict[str, Any] = {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    }
    required: List[str] = []
    for param in tool.parameters:
        schema: Dict[str, Any] = {"type": param.type}
        if param.description:
            schema["description"] = param.description
        if param.default is not None:
            schema["default"] = param.default
        if param.enum:
            schema["enum"] = param.enum
        if param.type == "array":
            schema["items"] = param.items or {"type": "string"}
        query_schema["properties"][param.name] = schema
        if param.required:
            required.append(param.name)
    if required:
        query_schema["required"] = required

    return {
        "type": "object",
        "properties": {
            "queries": {
                "type": "array",
                "items": query_schema,
                "minItems": 1,
            }
        },
        "required": ["queries"],
    }


class ToolRegistry:
    """
    Central registry for tool management.

    Provides:
    - Tool registration
    - Tool discovery
    - Tool lookup by name
    """

    _tools: Dict[str, Tool] = {}

    @classmethod
    def register(cls, tool: Tool):
        """
        Register a tool in the registry.

        Raises:
            ValueError: If tool with same name already exists
        """
        if tool.name in cls._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        cls._tools[tool.name] = tool

    @classmethod
    def get(cls, tool_name: str) -> Optional[Tool]:
        return cls._tools.get(tool_name)

    @classmethod
    def get_all(cls) -> List[Tool]:
        return list(cls._tools.values())

    @classmethod
    def clear(cls):
        cls._tools.clear()

    @classmethod
    def list_names(cls) -> List[str]:
        return list(cls._tools.keys())
