"""
Audit payloads stored on Transaction.

Each payload is one of three tagged shapes, serialized with a `tag` and a
schema `version` so readers can dispatch without guessing.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Union

from django.utils import timezone

AUDIT_SCHEMA_VERSION = 1


def _now_iso() -> str:
    return timezone.now().isoformat()


@dataclass(frozen=True)
class RequestAudit:
    symbol: str
    side: str
    quantity: float
    reference_price: float
    order_kind: str
    venue: str
    source: str = "auto"
    sent_at: str = field(default_factory=_now_iso)

    tag = "request"


@dataclass(frozen=True)
class ResponseAudit:
    external_order_id: str
    executed_price: float
    executed_quantity: float
    raw: dict[str, Any] = field(default_factory=dict)
    received_at: str = field(default_factory=_now_iso)

    tag = "response"


@dataclass(frozen=True)
class ErrorAudit:
    error_kind: str
    error_code: str
    error_message: str
    raw: dict[str, Any] = field(default_factory=dict)
    recorded_at: str = field(default_factory=_now_iso)

    tag = "error"

    @property
    def error(self) -> bool:
        return True


Audit = Union[RequestAudit, ResponseAudit, ErrorAudit]

_BY_TAG = {cls.tag: cls for cls in (RequestAudit, ResponseAudit, ErrorAudit)}


def to_payload(audit: Audit) -> dict[str, Any]:
    payload = asdict(audit)
    payload["tag"] = audit.tag
    payload["version"] = AUDIT_SCHEMA_VERSION
    if isinstance(audit, ErrorAudit):
        payload["error"] = True
    return payload


def from_payload(payload: dict[str, Any] | None) -> Audit | None:
    if not payload:
        return None
    cls = _BY_TAG.get(str(payload.get("tag") or ""))
    if cls is None:
        raise ValueError(f"unknown audit tag: {payload.get('tag')!r}")
    names = cls.__dataclass_fields__.keys()
    return cls(**{k: v for k, v in payload.items() if k in names})


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def sanitize_raw(raw: dict[str, Any] | None) -> dict[str, Any]:
    """Exchange responses may hold Decimals or datetimes; JSONField needs plain types."""
    return _json_safe(raw or {})
