from __future__ import annotations

from dataclasses import asdict, is_dataclass
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from pathlib import Path
from typing import Any


def _normalize(obj: Any) -> Any:
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, (IPv4Address, IPv4Interface, IPv4Network, Path)):
        return str(obj)
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    return obj


def to_json_safe_dict(obj: Any) -> dict[str, Any]:
    """
    Convert a dataclass object into a JSON safe dict.

    This is used by the CLI json output and by the registry writer.
    """
    if not is_dataclass(obj) or isinstance(obj, type):
        raise TypeError("expected a dataclass instance")
    raw = asdict(obj)
    normalized = _normalize(raw)
    if not isinstance(normalized, dict):
        raise TypeError("expected dict after normalization")
    return normalized
