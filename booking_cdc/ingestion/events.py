"""
Change Envelope Parsing

Turns source change envelopes into ChangeEvents. Two envelope shapes are
accepted:

- generic:  {"operation": "INSERT", "before": {...}, "after": {...}, "timestamp": ...}
- debezium: {"op": "c", "before": {...}, "after": {...}, "ts_ms": 1700000000000}

Flat rows (booking columns next to ``operation`` and ``timestamp``) are
accepted as well, which is what CSV extracts look like.
"""

import json
from typing import Any, Dict, Mapping, Optional

from booking_cdc.errors import MalformedEnvelopeError
from booking_cdc.schemas import ChangeAction, ChangeEvent, coerce_timestamp

OPERATION_ALIASES: Dict[str, ChangeAction] = {
    "INSERT": ChangeAction.INSERT,
    "CREATE": ChangeAction.INSERT,
    "C": ChangeAction.INSERT,
    "R": ChangeAction.INSERT,  # debezium snapshot read
    "UPDATE": ChangeAction.UPDATE,
    "U": ChangeAction.UPDATE,
    "DELETE": ChangeAction.DELETE,
    "D": ChangeAction.DELETE,
}

BOOKING_FIELDS = (
    "booking_id",
    "customer_id",
    "movie_id",
    "booking_date",
    "status",
    "ticket_count",
    "ticket_price",
    "created_at",
    "updated_at",
)

ENVELOPE_FIELDS = {"operation", "op", "before", "after", "timestamp", "ts_ms", "is_update", "source"}


def _to_jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def parse_operation(value: Any) -> ChangeAction:
    """Map a source operation tag onto a ChangeAction"""
    if isinstance(value, ChangeAction):
        return value
    if value is None:
        raise MalformedEnvelopeError("Change envelope has no operation")
    action = OPERATION_ALIASES.get(str(value).strip().upper())
    if action is None:
        raise MalformedEnvelopeError(
            f"Unknown change operation: {value!r}",
            details={"operation": str(value)},
        )
    return action


def _image(envelope: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    image = envelope.get(key)
    if image is None:
        return None
    if isinstance(image, str):
        try:
            image = json.loads(image)
        except json.JSONDecodeError:
            raise MalformedEnvelopeError(f"Change envelope '{key}' image is not valid JSON")
    if not isinstance(image, Mapping):
        raise MalformedEnvelopeError(f"Change envelope '{key}' image is not an object")
    return image


def change_event_from_envelope(envelope: Mapping[str, Any]) -> ChangeEvent:
    """
    Build a ChangeEvent from a source envelope.

    INSERT and UPDATE take the after image, DELETE takes the before image
    (falling back to whichever image is present). Booking field problems
    never raise here; they are left for the derivation validity flag.

    Raises:
        MalformedEnvelopeError: operation or timestamp cannot be interpreted
    """
    if not isinstance(envelope, Mapping):
        raise MalformedEnvelopeError("Change envelope is not an object")

    action = parse_operation(envelope.get("operation", envelope.get("op")))

    raw_ts = envelope.get("timestamp")
    if raw_ts is None:
        raw_ts = envelope.get("ts_ms")
    change_timestamp = coerce_timestamp(raw_ts)
    if change_timestamp is None:
        raise MalformedEnvelopeError(
            "Change envelope has no interpretable timestamp",
            details={"timestamp": str(raw_ts)},
        )

    before = _image(envelope, "before")
    after = _image(envelope, "after")
    if before is None and after is None:
        # Flat row: booking columns live next to the metadata
        image: Mapping[str, Any] = {k: v for k, v in envelope.items() if k not in ENVELOPE_FIELDS}
    elif action == ChangeAction.DELETE:
        image = before if before is not None else after
    else:
        image = after if after is not None else before

    is_update = envelope.get("is_update")
    if is_update is None:
        is_update = action == ChangeAction.UPDATE
    elif isinstance(is_update, str):
        is_update = is_update.strip().lower() in ("1", "true", "t", "yes")

    return ChangeEvent(
        **{name: image.get(name) for name in BOOKING_FIELDS},
        change_action=action,
        is_update=bool(is_update),
        change_timestamp=change_timestamp,
        raw_payload=_to_jsonable(dict(envelope)),
    )
