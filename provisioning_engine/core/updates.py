# provisioning_engine/core/updates.py

"""
Tagged update requests for array-like child collections.

A request is exactly one of Create, Delete or Patch; handlers dispatch on the type.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union
from uuid import UUID

from provisioning_engine.core.errors import ValidationError


@dataclass(frozen=True)
class Create:
    fields: Dict[str, Any]


@dataclass(frozen=True)
class Delete:
    ids: List[UUID] = field(default_factory=list)


@dataclass(frozen=True)
class Patch:
    id: UUID
    fields: Dict[str, Any]


UpdateRequest = Union[Create, Delete, Patch]


def parse_update_request(payload: Dict[str, Any]) -> UpdateRequest:
    """
    Build a tagged request from a loose payload.

    ``{"new_fields": {...}}`` -> Create, ``{"deleted": [...]}`` -> Delete,
    ``{"id": ..., "fields": {...}}`` -> Patch.
    """
    try:
        if "new_fields" in payload:
            return Create(fields=dict(payload["new_fields"] or {}))

        if "deleted" in payload:
            return Delete(ids=[UUID(str(value)) for value in payload["deleted"] or []])

        if "id" in payload:
            return Patch(id=UUID(str(payload["id"])), fields=dict(payload.get("fields") or {}))
    except ValueError as e:
        raise ValidationError(f"Invalid update request: {e}")

    raise ValidationError(f"Unrecognized update request: {sorted(payload)}")
