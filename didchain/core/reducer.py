"""
Document Reducer

Folds decoded registry events into a LogDocument.

Rules (enforced in code):
- Events without a validity deadline (ownership changes) are no-ops
- Every other kind MUST have a handler; a missing one is fatal
- An entry is written only if no entry with the same id exists at an
  equal or newer block. Replaying an event is therefore a no-op, and the
  final document does not depend on the order events are applied in.
- A signature-authority delegate is also a verification key: one event,
  two writes (authentication + public key)
- "pub" payloads that are not JSON objects are skipped with a reason;
  "svc" payloads that do not decode raise PayloadDecodeError
"""

import base64
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError

from ..errors import PayloadDecodeError, UnhandledEventError
from ..schemas import (
    AttributeEntry,
    AuthenticationEntry,
    DelegateType,
    EventKind,
    LogDocument,
    PublicKeyEntry,
    RegistryEvent,
    ServiceEntry,
    extract_address,
)
from .attributes import (
    SECTION_PUBLIC_KEY,
    SECTION_SERVICE,
    AttributeName,
    parse_attribute_name,
)
from .codec import decode_json, decode_text, parse_bytes32_string

logger = logging.getLogger(__name__)


DELEGATE_KEY_TYPE = "Secp256k1VerificationKey2018"


@dataclass(frozen=True)
class ReduceOutcome:
    """What applying one event did to the document."""
    kind: EventKind
    block: int
    applied: bool
    reason: Optional[str] = None


def _is_superseded(existing, block: int) -> bool:
    return existing is not None and existing.block >= block


class DocumentReducer:
    """
    Applies registry events to a LogDocument.

    The document is mutated in place; callers must own it exclusively.
    """

    def __init__(self):
        self._handlers: dict[EventKind, Callable[..., ReduceOutcome]] = {
            EventKind.DELEGATE_CHANGED: self._handle_delegate_changed,
            EventKind.ATTRIBUTE_CHANGED: self._handle_attribute_changed,
        }

    def apply(self, document: LogDocument, event: RegistryEvent, did: str) -> ReduceOutcome:
        """
        Apply one event to the document.

        Raises:
            UnhandledEventError: event carries a validity deadline but no
                handler exists for its kind
            InvalidDIDError: attribute change for a DID without an address
            PayloadDecodeError: malformed service descriptor
        """
        valid_to = event.valid_to
        if valid_to is None:
            return self._skip(event, "no validity deadline")

        handler = self._handlers.get(event.kind)
        if handler is None:
            raise UnhandledEventError(
                f"No reducer handler for event kind {event.kind.value} "
                f"at block {event.block_number}"
            )
        return handler(document, event, did, valid_to)

    def _applied(self, event: RegistryEvent) -> ReduceOutcome:
        return ReduceOutcome(kind=event.kind, block=event.block_number, applied=True)

    def _skip(self, event: RegistryEvent, reason: str) -> ReduceOutcome:
        logger.debug(
            f"Skipped {event.kind.value} at block {event.block_number}: {reason}"
        )
        return ReduceOutcome(
            kind=event.kind, block=event.block_number, applied=False, reason=reason
        )

    # ================================================================
    # DELEGATE CHANGES
    # ================================================================

    def _handle_delegate_changed(
        self, document: LogDocument, event: RegistryEvent, did: str, valid_to: int
    ) -> ReduceOutcome:
        block = event.block_number
        delegate_type = parse_bytes32_string(event.values["delegateType"])
        delegate = event.values["delegate"]
        key_id = f"{did}#delegate-{delegate_type}-{delegate}"

        if _is_superseded(document.public_key.get(key_id), block):
            return self._skip(event, f"{key_id} already written at a newer block")

        if delegate_type == DelegateType.SIGNATURE_AUTHORITY.value:
            self._write_signature_authority(document, key_id, valid_to, block)
            self._write_verification_key(document, key_id, did, delegate, valid_to, block)
        elif delegate_type == DelegateType.VERIFICATION_KEY.value:
            self._write_verification_key(document, key_id, did, delegate, valid_to, block)
        else:
            return self._skip(event, f"unsupported delegate type {delegate_type!r}")

        return self._applied(event)

    @staticmethod
    def _write_signature_authority(
        document: LogDocument, key_id: str, valid_to: int, block: int
    ) -> None:
        document.authentication[key_id] = AuthenticationEntry(
            type=DelegateType.SIGNATURE_AUTHORITY.value,
            public_key=key_id,
            validity=valid_to,
            block=block,
        )

    @staticmethod
    def _write_verification_key(
        document: LogDocument,
        key_id: str,
        did: str,
        delegate: str,
        valid_to: int,
        block: int,
    ) -> None:
        document.public_key[key_id] = PublicKeyEntry(
            id=key_id,
            type=DELEGATE_KEY_TYPE,
            controller=did,
            ethereum_address=delegate,
            validity=valid_to,
            block=block,
        )

    # ================================================================
    # ATTRIBUTE CHANGES
    # ================================================================

    def _handle_attribute_changed(
        self, document: LogDocument, event: RegistryEvent, did: str, valid_to: int
    ) -> ReduceOutcome:
        identity = extract_address(did)
        name = parse_bytes32_string(event.values["name"])
        value = bytes(event.values["value"])

        parsed = parse_attribute_name(name)
        if parsed is None:
            return self._write_attribute(document, event, name, value, valid_to)
        if parsed.section == SECTION_PUBLIC_KEY:
            return self._write_public_key(document, event, did, identity, parsed, value, valid_to)
        if parsed.section == SECTION_SERVICE:
            return self._write_service(document, event, name, value, valid_to)
        return self._skip(event, f"unsupported attribute section {parsed.section!r}")

    def _write_public_key(
        self,
        document: LogDocument,
        event: RegistryEvent,
        did: str,
        identity: str,
        name: AttributeName,
        value: bytes,
        valid_to: int,
    ) -> ReduceOutcome:
        block = event.block_number
        try:
            payload = decode_json(value)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return self._skip(event, "public key payload is not a JSON object")
        if not payload.get("tag"):
            return self._skip(event, "public key payload has no tag")

        key_id = f"{did}#{payload['tag']}"
        if _is_superseded(document.public_key.get(key_id), block):
            return self._skip(event, f"{key_id} already written at a newer block")

        key_material: dict[str, str] = {}
        if name.encoding in (None, "hex"):
            if payload.get("publicKey") is not None:
                key_material["public_key_hex"] = str(payload["publicKey"])
        elif name.encoding == "base64":
            key_material["public_key_base64"] = base64.b64encode(value).decode("ascii")
        elif name.encoding == "pem":
            key_material["public_key_pem"] = decode_text(value)
        # Unknown encodings carry no key material

        document.public_key[key_id] = PublicKeyEntry(
            id=key_id,
            type=f"{name.algorithm}{name.type or ''}",
            controller=identity,
            validity=valid_to,
            block=block,
            **key_material,
        )
        return self._applied(event)

    def _write_service(
        self,
        document: LogDocument,
        event: RegistryEvent,
        name: str,
        value: bytes,
        valid_to: int,
    ) -> ReduceOutcome:
        block = event.block_number
        try:
            descriptor = decode_json(value)
            service = ServiceEntry.model_validate(
                {**descriptor, "validity": valid_to, "block": block}
            )
        except (ValueError, TypeError, ValidationError) as e:
            raise PayloadDecodeError(
                f"Malformed service descriptor in {name!r} at block {block}: {e}"
            ) from e

        if _is_superseded(document.service.get(service.id), block):
            return self._skip(event, f"service {service.id} already written at a newer block")

        document.service[service.id] = service
        return self._applied(event)

    def _write_attribute(
        self,
        document: LogDocument,
        event: RegistryEvent,
        name: str,
        value: bytes,
        valid_to: int,
    ) -> ReduceOutcome:
        block = event.block_number
        if _is_superseded(document.attributes.get(name), block):
            return self._skip(event, f"attribute {name!r} already written at a newer block")

        document.attributes[name] = AttributeEntry(
            attribute=decode_text(value),
            validity=valid_to,
            block=block,
        )
        return self._applied(event)
