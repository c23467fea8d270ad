from dataclasses import dataclass, field
from typing import Any

_MISSING = object()


@dataclass
class RawTool:
    """A tool entry exactly as a remote MCP server reported it."""
    name: str
    description: str = ""
    input_schema: Any = field(default_factory=dict)


@dataclass
class ParameterDescriptor:
    name: str
    type: str = ""
    description: str = ""
    required: bool = False
    default: Any = None
    enum: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
        }
        if self.default is not None:
            data["default"] = self.default
        if self.enum:
            data["enum"] = list(self.enum)
        return data


def _required_names(schema: dict[str, Any]) -> set[str]:
    required = schema.get("required")
    if not isinstance(required, list):
        return set()
    return {item for item in required if isinstance(item, str)}


def parse_input_schema(schema: Any) -> list[ParameterDescriptor]:
    """Best-effort conversion of a tool's inputSchema into parameter descriptors.

    Anything that does not look like an object schema with `properties`
    yields an empty list rather than an error. Descriptors follow the order
    of `properties`; entries that are not objects are skipped.
    """
    if not isinstance(schema, dict):
        return []
    properties = schema.get("properties")
    if not isinstance(properties, dict):
        return []

    required = _required_names(schema)
    descriptors: list[ParameterDescriptor] = []
    for name, prop in properties.items():
        if not isinstance(prop, dict):
            continue

        prop_type = prop.get("type")
        description = prop.get("description")
        enum_values = prop.get("enum")
        default = prop.get("default", _MISSING)

        descriptors.append(
            ParameterDescriptor(
                name=str(name),
                type=prop_type if isinstance(prop_type, str) else "",
                description=description if isinstance(description, str) else "",
                required=name in required,
                default=None if default is _MISSING else default,
                enum=[value for value in enum_values if isinstance(value, str)]
                if isinstance(enum_values, list)
                else [],
            )
        )
    return descriptors
