"""
Schema registry collaborator.

Per block type the registry lists required and optional property names with
their value kind and, for dimensioned numbers, a dimension tag and default
unit. Only aggregation consults it; plain resolution never does.

Schema file format (JSON), one entry per block type:

    {
      "version": "v1.0-costing",
      "blocks": {
        "Pipe": {
          "length":   {"kind": "number", "required": true,
                       "dimension": "length", "defaultUnit": "km"},
          "material": {"kind": "enum", "enumValues": ["steel", "hdpe"]}
        }
      }
    }
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol
from loguru import logger

from network_graph.errors import UnknownBlockType, PersistenceFailure
from network_graph.ontology import ValueKind


@dataclass
class PropertySpec:
    name: str
    kind: ValueKind = ValueKind.STRING
    required: bool = False
    dimension: Optional[str] = None
    default_unit: Optional[str] = None
    enum_values: list = field(default_factory=list)
    title: str = ""
    description: str = ""
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass
class BlockSchema:
    block_type: str
    properties: dict[str, PropertySpec] = field(default_factory=dict)

    @property
    def required(self) -> list[str]:
        return [name for name, spec in self.properties.items() if spec.required]

    @property
    def optional(self) -> list[str]:
        return [name for name, spec in self.properties.items() if not spec.required]

    def references(self, prop: str) -> bool:
        return prop in self.properties

    def is_required(self, prop: str) -> bool:
        spec = self.properties.get(prop)
        return spec is not None and spec.required


class SchemaRegistry(Protocol):
    def describe(self, block_type: str) -> BlockSchema:
        """Schema of `block_type`; raises UnknownBlockType if unregistered."""
        ...


class InMemorySchemaRegistry:
    """Dict-backed registry, loadable from a JSON schema file."""

    def __init__(self, schemas: Optional[dict[str, BlockSchema]] = None, version: str = ""):
        self.version = version
        self._schemas: dict[str, BlockSchema] = dict(schemas or {})

    def register(self, schema: BlockSchema) -> None:
        self._schemas[schema.block_type] = schema

    def describe(self, block_type: str) -> BlockSchema:
        schema = self._schemas.get(block_type)
        if schema is None:
            raise UnknownBlockType(block_type)
        return schema

    def block_types(self) -> list[str]:
        return list(self._schemas)

    def __contains__(self, block_type: str) -> bool:
        return block_type in self._schemas

    @classmethod
    def from_dict(cls, data: dict) -> InMemorySchemaRegistry:
        registry = cls(version=data.get("version", ""))
        for block_type, props in data.get("blocks", {}).items():
            specs = {}
            for name, raw in props.items():
                specs[name] = PropertySpec(
                    name=name,
                    kind=ValueKind(raw.get("kind", "string")),
                    required=bool(raw.get("required", False)),
                    dimension=raw.get("dimension"),
                    default_unit=raw.get("defaultUnit"),
                    enum_values=list(raw.get("enumValues", [])),
                    title=raw.get("title", ""),
                    description=raw.get("description", ""),
                    minimum=raw.get("min"),
                    maximum=raw.get("max"),
                )
            registry.register(BlockSchema(block_type, specs))
        return registry

    @classmethod
    def from_json(cls, filepath) -> InMemorySchemaRegistry:
        path = Path(filepath)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"Cannot read schema file {path}: {exc}") from exc
        registry = cls.from_dict(data)
        logger.info(f"Loaded schema {registry.version or path.name}: {len(registry.block_types())} block types")
        return registry
