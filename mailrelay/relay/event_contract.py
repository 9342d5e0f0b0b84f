from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import jsonschema


RELAY_EVENT_CONTRACT = "RelayEvent"
RELAY_EVENT_VERSION = "1.0.0"

_STRING_FIELDS = (
    "message_id",
    "from",
    "to",
    "subject",
    "timestamp",
    "content",
    "user_id",
    "client_id",
    "tenant_id",
    "tenant_name",
    "connection_email",
    "source",
    "notification_type",
)


@dataclass(frozen=True)
class EventContract:
    name: str
    version: str
    schema: dict[str, Any]


def _contract_relay_event_v1() -> EventContract:
    properties: dict[str, Any] = {name: {"type": "string"} for name in _STRING_FIELDS}
    for name in ("message_id", "user_id", "client_id", "tenant_id", "tenant_name", "source"):
        properties[name] = {"type": "string", "minLength": 1}
    schema: dict[str, Any] = {
        "type": "object",
        "additionalProperties": False,
        "required": list(_STRING_FIELDS),
        "properties": properties,
    }
    return EventContract(name=RELAY_EVENT_CONTRACT, version=RELAY_EVENT_VERSION, schema=schema)


@lru_cache(maxsize=4)
def get_contract(*, name: str, version: str) -> EventContract:
    if name == RELAY_EVENT_CONTRACT and version == RELAY_EVENT_VERSION:
        return _contract_relay_event_v1()
    raise ValueError(f"unsupported event contract: {name} v{version}")


@lru_cache(maxsize=4)
def _validator_cache(name: str, version: str) -> jsonschema.Draft202012Validator:
    contract = get_contract(name=name, version=version)
    return jsonschema.Draft202012Validator(contract.schema)


def validate_relay_event(event: Any) -> None:
    """Raise jsonschema.ValidationError when the body does not match the relay contract."""

    _validator_cache(RELAY_EVENT_CONTRACT, RELAY_EVENT_VERSION).validate(event)
