"""
Registry Event Codec

Turns raw ledger logs into typed RegistryEvents, and back.

DECODING RULES:
1. topics[0] must be the keccak-256 of a known event signature
2. topics[1] is the indexed identity (address left-padded to 32 bytes)
3. data holds the non-indexed fields, ABI-encoded in declaration order
4. Addresses are returned in checksum form
5. bytes32 / bytes fields stay raw; callers decode them with the
   packed-string helpers below (fixed-width string, text, JSON)

Anything else is a DecodeError: the log is not one of ours.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak, to_checksum_address

from ..errors import DecodeError
from .abi import REGISTRY_ABI
from ..schemas import EventKind, RawLog, RegistryEvent


# ============================================================
# PACKED BYTE STRING HELPERS
# ============================================================

def parse_bytes32_string(value: bytes) -> str:
    """Decode a NUL-padded fixed-width UTF-8 string (e.g. a delegate type)."""
    try:
        return bytes(value).rstrip(b"\x00").decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"Fixed-width string is not valid UTF-8: {value!r}") from e


def format_bytes32_string(text: str) -> bytes:
    """Inverse of parse_bytes32_string."""
    raw = text.encode("utf-8")
    if len(raw) > 32:
        raise ValueError(f"String too long for bytes32 ({len(raw)} bytes): {text!r}")
    return raw.ljust(32, b"\x00")


def decode_text(value: bytes) -> str:
    """Decode an attribute value as text. Invalid sequences become U+FFFD."""
    return bytes(value).decode("utf-8", errors="replace")


def decode_json(value: bytes) -> Any:
    """
    Decode an attribute value as UTF-8 JSON.

    Raises ValueError (json.JSONDecodeError / UnicodeDecodeError) on failure.
    """
    return json.loads(bytes(value).decode("utf-8"))


def hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


# ============================================================
# EVENT SCHEMA
# ============================================================

@dataclass(frozen=True)
class EventSchema:
    """One event of the registry ABI."""
    kind: EventKind
    signature: str
    topic: str
    indexed: tuple[tuple[str, str], ...]
    fields: tuple[tuple[str, str], ...]

    @property
    def field_types(self) -> list[str]:
        return [t for _, t in self.fields]


def _event_signature(entry: dict[str, Any]) -> str:
    types = ",".join(i["type"] for i in entry["inputs"])
    return f"{entry['name']}({types})"


class EventCodec:
    """
    Decoder (and encoder) for registry logs.

    Only events named in EventKind are indexed; any other topic is
    reported as unrecognized.
    """

    def __init__(self, abi: Optional[list[dict[str, Any]]] = None):
        self._by_topic: dict[str, EventSchema] = {}
        self._by_kind: dict[EventKind, EventSchema] = {}

        known = {k.value for k in EventKind}
        for entry in abi if abi is not None else REGISTRY_ABI:
            if entry.get("type") != "event" or entry.get("name") not in known:
                continue
            signature = _event_signature(entry)
            schema = EventSchema(
                kind=EventKind(entry["name"]),
                signature=signature,
                topic="0x" + keccak(text=signature).hex(),
                indexed=tuple((i["name"], i["type"]) for i in entry["inputs"] if i.get("indexed")),
                fields=tuple((i["name"], i["type"]) for i in entry["inputs"] if not i.get("indexed")),
            )
            self._by_topic[schema.topic] = schema
            self._by_kind[schema.kind] = schema

    @property
    def kinds(self) -> list[EventKind]:
        return list(self._by_kind)

    def topic_for(self, kind: EventKind) -> str:
        """Signature topic (topics[0]) for an event kind."""
        return self.schema_for(kind).topic

    def schema_for(self, kind: EventKind) -> EventSchema:
        try:
            return self._by_kind[kind]
        except KeyError:
            raise DecodeError(f"Event {kind.value} is not part of the registry ABI")

    def decode(self, log: RawLog) -> RegistryEvent:
        """
        Decode a raw log into a RegistryEvent.

        Raises DecodeError if the signature is unknown or the payload
        does not match the event's ABI.
        """
        if not log.topics:
            raise DecodeError(f"Log at block {log.block_number} has no topics")

        schema = self._by_topic.get(log.topics[0].lower())
        if schema is None:
            raise DecodeError(
                f"Unrecognized event signature {log.topics[0]} at block {log.block_number}"
            )

        if len(log.topics) < 1 + len(schema.indexed):
            raise DecodeError(
                f"{schema.kind.value} at block {log.block_number} is missing indexed topics"
            )

        try:
            identity_topic = hex_to_bytes(log.topics[1])
            data = hex_to_bytes(log.data)
            decoded = abi_decode(schema.field_types, data)
        except (ValueError, DecodingError) as e:
            raise DecodeError(
                f"Malformed {schema.kind.value} log at block {log.block_number}: {e}"
            ) from e

        values: dict[str, Any] = {}
        for (name, abi_type), value in zip(schema.fields, decoded):
            values[name] = to_checksum_address(value) if abi_type == "address" else value

        return RegistryEvent(
            kind=schema.kind,
            identity=to_checksum_address("0x" + identity_topic[-20:].hex()),
            values=values,
            block_number=log.block_number,
            log_index=log.log_index,
        )

    def encode(
        self,
        kind: EventKind,
        identity: str,
        values: dict[str, Any],
        block_number: int,
        address: str,
        log_index: int = 0,
    ) -> RawLog:
        """
        Build the RawLog the registry would emit for an event.

        bytes32 fields accept str (NUL-padded) or bytes; address fields
        accept any hex casing.
        """
        schema = self.schema_for(kind)

        args = []
        for name, abi_type in schema.fields:
            value = values[name]
            if abi_type == "bytes32" and isinstance(value, str):
                value = format_bytes32_string(value)
            elif abi_type == "address":
                value = to_checksum_address(value)
            args.append(value)

        try:
            data = abi_encode(schema.field_types, args)
        except EncodingError as e:
            raise ValueError(f"Cannot encode {kind.value}: {e}") from e

        return RawLog(
            address=address,
            topics=[schema.topic, "0x" + "0" * 24 + identity[2:].lower()],
            data="0x" + data.hex(),
            block_number=block_number,
            log_index=log_index,
        )
