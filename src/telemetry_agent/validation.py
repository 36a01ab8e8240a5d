"""
Event validation and PII sanitization.

``validate_event`` is a pure function: it either returns a well-formed
:class:`Event` or raises :class:`EventValidationError`. Callers own the
dropped-invalid accounting.

Rules:
- ``name`` non-empty, at most ``max_name_length`` characters
- ``properties`` is a flat map of string keys to scalars (str/int/float/bool/None)
- string values that look like PII (email, phone number...) are replaced with
  ``REDACTED`` unless redaction is disabled, in which case the event is rejected
- keys in ``denied_keys``, or matching ``forbidden_key_patterns`` (case-insensitive
  search, e.g. ``email``, ``home_address``), are stripped
- the serialized event may not exceed ``max_event_bytes``
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Pattern

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .errors import EventValidationError
from .models import SCHEMA_VERSION, Event, Identity
from .utils import generate_id, utc_now

REDACTED = "[REDACTED]"

DEFAULT_PII_PATTERNS: tuple[Pattern[str], ...] = (
    re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),  # email
    re.compile(r"(?<!\w)(?:\+\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\w)"),  # phone
    re.compile(r"(?<!\w)\+\d[\d\s-]{8,}\d(?!\w)"),  # international phone
    re.compile(r"\b(?:\d[ -]?){13,16}\b"),  # card number
)

# property keys that name free text or contact details are never logged
FORBIDDEN_KEY_PATTERNS: tuple[str, ...] = (
    "text",
    "body",
    "content",
    "title",
    "subject",
    "name",
    "email",
    "phone",
    "address",
    "message",
    "prompt",
    "output",
    "generated",
)
DEFAULT_FORBIDDEN_KEYS: tuple[Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE) for p in FORBIDDEN_KEY_PATTERNS
)

_SCALARS = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class ValidationPolicy:
    max_name_length: int = 200
    max_properties: int = 50
    max_key_length: int = 100
    max_string_length: int = 1024
    max_event_bytes: int = 8192
    redact_pii: bool = True
    pii_patterns: tuple[Pattern[str], ...] = DEFAULT_PII_PATTERNS
    denied_keys: frozenset[str] = field(default_factory=frozenset)
    forbidden_key_patterns: tuple[Pattern[str], ...] = DEFAULT_FORBIDDEN_KEYS

    @classmethod
    def from_settings(cls, settings) -> "ValidationPolicy":
        patterns = settings.forbidden_property_key_patterns
        forbidden = (
            DEFAULT_FORBIDDEN_KEYS
            if patterns is None
            else tuple(re.compile(p, re.IGNORECASE) for p in patterns)
        )
        return cls(
            max_name_length=settings.max_name_length,
            max_properties=settings.max_properties,
            max_event_bytes=settings.max_event_bytes,
            redact_pii=settings.redact_pii,
            denied_keys=frozenset(settings.denied_property_keys),
            forbidden_key_patterns=forbidden,
        )


DEFAULT_POLICY = ValidationPolicy()


def contains_pii(value: str, patterns: tuple[Pattern[str], ...] = DEFAULT_PII_PATTERNS) -> bool:
    return any(p.search(value) for p in patterns)


def is_forbidden_key(key: str, policy: ValidationPolicy = DEFAULT_POLICY) -> bool:
    return key in policy.denied_keys or any(p.search(key) for p in policy.forbidden_key_patterns)


def sanitize_properties(
    properties: Mapping[str, Any], policy: ValidationPolicy = DEFAULT_POLICY
) -> dict[str, Any]:
    """Check property shape and redact PII. Raises EventValidationError."""
    if not isinstance(properties, Mapping):
        raise EventValidationError("properties must be an object")
    if len(properties) > policy.max_properties:
        raise EventValidationError(
            f"too many properties ({len(properties)} > {policy.max_properties})"
        )

    out: dict[str, Any] = {}
    for key, value in properties.items():
        if not isinstance(key, str) or not key or len(key) > policy.max_key_length:
            raise EventValidationError(f"invalid property key {key!r}")
        if is_forbidden_key(key, policy):
            logger.debug(f"Stripped forbidden property {key!r}")
            continue
        if not isinstance(value, _SCALARS):
            raise EventValidationError(
                f"property {key!r} must be a scalar, got {type(value).__name__}"
            )
        if isinstance(value, float) and not math.isfinite(value):
            raise EventValidationError(f"property {key!r} must be a finite number")
        if isinstance(value, str):
            if len(value) > policy.max_string_length:
                raise EventValidationError(f"property {key!r} exceeds {policy.max_string_length} chars")
            if contains_pii(value, policy.pii_patterns):
                if not policy.redact_pii:
                    raise EventValidationError(f"property {key!r} contains PII")
                value = REDACTED
        out[key] = value
    return out


def _check_name(name: Any, policy: ValidationPolicy) -> str:
    if not isinstance(name, str) or not name.strip():
        raise EventValidationError("name is required")
    if len(name) > policy.max_name_length:
        raise EventValidationError(f"name exceeds {policy.max_name_length} chars")
    return name


def validate_event(
    raw: Mapping[str, Any] | Event,
    policy: ValidationPolicy = DEFAULT_POLICY,
    *,
    identity: Optional[Identity] = None,
    assign_defaults: bool = True,
) -> Event:
    """Validate an untyped payload and return a sanitized :class:`Event`.

    Args:
        raw: Event payload, in wire (camelCase) or Python (snake_case) form
        policy: Limits and PII behaviour
        identity: Fills ``sessionId``/``deviceId``/``userId`` when absent from ``raw``
        assign_defaults: Assign ``id`` and ``occurredAt`` when absent. The
            ingestion endpoint disables this since producers must send them.

    Raises:
        EventValidationError: On any structural violation
    """
    if isinstance(raw, Event):
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, Mapping):
        raise EventValidationError("event must be an object")

    data = dict(raw)
    name = _check_name(data.get("name"), policy)
    props = sanitize_properties(data.get("properties") or {}, policy)

    def pick(camel: str, snake: str) -> Any:
        return data.get(camel, data.get(snake))

    event_id = pick("id", "id")
    occurred_at = pick("occurredAt", "occurred_at")
    if assign_defaults:
        event_id = event_id or generate_id()
        occurred_at = occurred_at or utc_now()

    fields = {
        "id": event_id,
        "name": name,
        "properties": props,
        "occurredAt": occurred_at,
        "sessionId": pick("sessionId", "session_id"),
        "deviceId": pick("deviceId", "device_id"),
        "userId": pick("userId", "user_id"),
        "schemaVersion": pick("schemaVersion", "schema_version") or SCHEMA_VERSION,
    }
    if identity is not None:
        fields["sessionId"] = fields["sessionId"] or identity.session_id
        fields["deviceId"] = fields["deviceId"] or identity.device_id
        fields["userId"] = fields["userId"] or identity.user_id

    for key in ("sessionId", "deviceId"):
        if not isinstance(fields[key], str) or not fields[key]:
            raise EventValidationError(f"{key} is required")

    try:
        event = Event.model_validate(fields)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise EventValidationError(f"{loc}: {first.get('msg')}") from exc

    size = len(event.model_dump_json(by_alias=True))
    if size > policy.max_event_bytes:
        raise EventValidationError(f"event too large ({size} > {policy.max_event_bytes} bytes)")
    return event
