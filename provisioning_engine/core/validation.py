# provisioning_engine/core/validation.py

import re
from typing import Any, Dict, Iterable, List

from provisioning_engine.core.errors import ValidationError


DOMAIN_NAME_PATTERN = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9][a-z0-9-]{0,61}[a-z0-9]$"
)


def missing_params(params: Dict[str, Any], required: Iterable[str]) -> List[str]:
    """Names of required params that are absent or empty."""
    missing = []
    for name in required:
        value = params.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def require_params(params: Dict[str, Any], required: Iterable[str]) -> None:
    missing = missing_params(params, required)
    if missing:
        raise ValidationError(
            f"Missing required parameters: {', '.join(missing)}",
            missing_params=missing,
        )


def normalize_domain_name(domain_name: str) -> str:
    """Lower-case, trim and validate a domain name against the host-label grammar."""
    if not domain_name or not domain_name.strip():
        raise ValidationError("Domain name is required", missing_params=["domain_name"])

    normalized = domain_name.strip().lower()
    if not DOMAIN_NAME_PATTERN.match(normalized):
        raise ValidationError(f"Invalid domain name: {domain_name}")

    return normalized


def validate_ssh_port(port: Any) -> int:
    try:
        value = int(port)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid SSH port: {port}")

    if not 1 <= value <= 65535:
        raise ValidationError(f"SSH port out of range: {value}")

    return value
