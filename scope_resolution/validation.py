"""
Per-block value checks against the dimension evaluator collaborator.

The core never interprets units: unit-bearing strings are handed to a
DimensionEvaluator, which either returns a canonical string or raises
EvaluationError. Schema metadata (required, enum values, numeric bounds)
comes from the resolver's registry when it knows the block type.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Protocol
from loguru import logger

from network_graph.errors import EvaluationError, UnknownBlockType
from network_graph.ontology import PropertyKind, PropertyValue, Scope, as_scope_ref, property_kind
from .registry import BlockSchema, PropertySpec
from .resolver import ScopeResolver, Target


class DimensionEvaluator(Protocol):
    def normalize(self, expression: str, target_unit: Optional[str] = None) -> str:
        """Canonical form of `expression`; raises EvaluationError if it is not well formed."""
        ...


@dataclass
class ValueCheck:
    property: str
    value: Optional[PropertyValue] = None
    scope: Optional[Scope] = None
    normalized: Optional[str] = None
    error: Optional[str] = None
    missing: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.missing


def _check_value(check: ValueCheck, spec: Optional[PropertySpec],
                 evaluator: Optional[DimensionEvaluator]) -> None:
    kind = property_kind(check.value)
    if spec is not None and spec.enum_values and check.value not in spec.enum_values:
        check.error = f"{check.value!r} is not one of {spec.enum_values}"
        return
    if kind == PropertyKind.NUMBER and spec is not None:
        if spec.minimum is not None and check.value < spec.minimum:
            check.error = f"{check.value} is below the minimum {spec.minimum}"
        elif spec.maximum is not None and check.value > spec.maximum:
            check.error = f"{check.value} is above the maximum {spec.maximum}"
        return
    dimensioned = spec is not None and spec.dimension is not None and kind == PropertyKind.STRING
    if evaluator is None or not (kind == PropertyKind.EXPRESSION or dimensioned):
        return
    try:
        check.normalized = evaluator.normalize(check.value, spec.default_unit if spec else None)
    except EvaluationError as exc:
        check.error = str(exc)


def check_block_values(resolver: ScopeResolver, target: Target,
                       evaluator: Optional[DimensionEvaluator] = None) -> list[ValueCheck]:
    """
    Check every property visible at a block plus every property its schema
    declares. Required properties nobody defines come back with missing=True.
    """
    path = as_scope_ref(target).block_path
    block = resolver.graph.get_block(path.branch_id, path.index)
    resolved = resolver.resolve_block(path)

    schema: Optional[BlockSchema] = None
    if resolver.registry is not None:
        try:
            schema = resolver.registry.describe(block.type)
        except UnknownBlockType:
            logger.warning(f"No schema for {block.type!r}; checking {path} without metadata")

    names = list(resolved)
    if schema is not None:
        names += [name for name in schema.properties if name not in resolved]

    checks = []
    for name in names:
        spec = schema.properties.get(name) if schema else None
        value = resolved.get(name)
        if value is None:
            checks.append(ValueCheck(name, missing=bool(spec and spec.required)))
            continue
        check = ValueCheck(name, value.value, value.scope)
        _check_value(check, spec, evaluator)
        checks.append(check)

    failed = sum(1 for c in checks if not c.ok)
    if failed:
        logger.info(f"{path}: {failed} of {len(checks)} value(s) need attention")
    return checks

