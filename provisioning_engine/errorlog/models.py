# provisioning_engine/errorlog/models.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from provisioning_engine.core.models import Module, utcnow


@dataclass
class ErrorLogEntry:
    """Structured failure record for an entity (host, domain, application)."""
    entry_id: UUID
    entity_id: Optional[UUID]
    module: Module
    event: str
    status: str
    message: str
    error_type: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, **kwargs) -> "ErrorLogEntry":
        return cls(entry_id=uuid4(), **kwargs)
