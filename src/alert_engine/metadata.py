"""Typed alert metadata, one schema per category.

Alert metadata is a tagged variant selected by the alert's category. Unknown
categories fall back to ``GenericMetadata``, which only carries string
attributes.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Optional, Union

from src.alert_engine.exceptions import ValidationError


@dataclass(frozen=True)
class SystemMetadata:
    kind = "system"

    host: Optional[str] = None
    service: Optional[str] = None
    metric: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None


@dataclass(frozen=True)
class SecurityMetadata:
    kind = "security"

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    rule_id: Optional[str] = None
    account: Optional[str] = None


@dataclass(frozen=True)
class PerformanceMetadata:
    kind = "performance"

    metric: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None
    unit: Optional[str] = None


@dataclass(frozen=True)
class DeploymentMetadata:
    kind = "deployment"

    environment: Optional[str] = None
    version: Optional[str] = None
    commit: Optional[str] = None


@dataclass(frozen=True)
class GenericMetadata:
    kind = "generic"

    attributes: dict = field(default_factory=dict)


AlertMetadata = Union[SystemMetadata, SecurityMetadata, PerformanceMetadata, DeploymentMetadata, GenericMetadata]

METADATA_SCHEMAS: dict[str, type] = {
    "system": SystemMetadata,
    "security": SecurityMetadata,
    "performance": PerformanceMetadata,
    "deployment": DeploymentMetadata,
}

_NUMERIC = (int, float)


def parse_metadata(category: str, data: Optional[dict[str, Any]]) -> AlertMetadata:
    """Build the metadata variant for ``category`` from a plain dict.

    Raises:
        ValidationError: on unknown fields or values of the wrong type.
    """
    data = data or {}
    schema = METADATA_SCHEMAS.get(category)
    if schema is None:
        bad = [k for k, v in data.items() if not isinstance(v, str)]
        if bad:
            raise ValidationError(
                f"Metadata for category '{category}' only accepts string values",
                field=f"metadata.{bad[0]}",
            )
        return GenericMetadata(attributes=dict(data))

    known = {f.name: f for f in fields(schema)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValidationError(
            f"Unknown metadata field(s) for category '{category}': {', '.join(unknown)}",
            field=f"metadata.{unknown[0]}",
        )

    values = {}
    for name, value in data.items():
        if value is None:
            values[name] = None
            continue
        if known[name].type == Optional[float]:
            if isinstance(value, bool) or not isinstance(value, _NUMERIC):
                raise ValidationError(f"Metadata field '{name}' must be a number", field=f"metadata.{name}")
            values[name] = float(value)
        else:
            if not isinstance(value, str):
                raise ValidationError(f"Metadata field '{name}' must be a string", field=f"metadata.{name}")
            values[name] = value
    return schema(**values)


def metadata_to_dict(metadata: AlertMetadata) -> dict[str, Any]:
    if isinstance(metadata, GenericMetadata):
        return dict(metadata.attributes)
    return {k: v for k, v in asdict(metadata).items() if v is not None}
