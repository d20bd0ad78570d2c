"""
Tests for DID resolution

Exercises the whole resolution path against an in-memory registry:
1. Parse the DID and its attribute names
2. Decode registry logs
3. Reduce events into a log document
4. Walk the backward-linked change chain
5. Merge partial logs and render the DID document
6. Query documents with selectors
"""

import base64
import itertools
import json

import pytest
from eth_utils import keccak, to_checksum_address

from didchain.core import (
    CancellationToken,
    ChainWalker,
    DocumentBuilder,
    DocumentReducer,
    EventCodec,
    Resolver,
    ResolverConfig,
    RetryPolicy,
    document_from_logs,
    merge_logs,
    parse_attribute_name,
    query,
)
from didchain.core.attributes import AttributeName
from didchain.core.reducer import DELEGATE_KEY_TYPE
from didchain.db import InMemoryLogStore
from didchain.errors import (
    DecodeError,
    InvalidDIDError,
    LedgerReadError,
    LogStoreError,
    PayloadDecodeError,
    TraversalCancelled,
    UnhandledEventError,
    UnresolvedIdentityError,
)
from didchain.ledger import InMemoryLedger
from didchain.observability import get_metrics
from didchain.schemas import (
    EventKind,
    LogDocument,
    RawLog,
    RegistryEvent,
    Selector,
    extract_address,
    parse_did,
)


NOW = 1_700_000_000
FUTURE = NOW + 1000
PAST = NOW - 1

IDENTITY = to_checksum_address("0x" + "1a" * 20)
OTHER_IDENTITY = to_checksum_address("0x" + "2b" * 20)
DELEGATE = to_checksum_address("0x" + "ab" * 20)
NEW_OWNER = to_checksum_address("0x" + "cd" * 20)

DID = f"did:ethr:volta:{IDENTITY}"
OTHER_DID = f"did:ethr:volta:{OTHER_IDENTITY}"

HUB_SERVICE = {
    "id": f"{DID}#hub",
    "type": "HubService",
    "serviceEndpoint": "https://hub.example.com",
}


def fast_retry(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, base_delay_seconds=0, jitter_factor=0)


def decoded_history(ledger: InMemoryLedger, identity: str = IDENTITY) -> list[RegistryEvent]:
    codec = EventCodec()
    topic = parse_did(f"did:ethr:{identity}").topic
    logs = ledger.get_logs(ledger.registry_address, 0, ledger.latest_block(), [None, topic])
    return [codec.decode(log) for log in logs]


# ============================================================
# DID AND ATTRIBUTE NAMES
# ============================================================

class TestIdentity:
    """DIDs name exactly one registry address."""

    def test_parse_did_with_network(self):
        identity = parse_did(DID)
        assert identity.method == "ethr"
        assert identity.network == "volta"
        assert identity.address == IDENTITY

    def test_parse_did_without_network(self):
        identity = parse_did(f"did:ethr:{IDENTITY}")
        assert identity.network is None
        assert identity.address == IDENTITY

    def test_topic_is_padded_lowercase_address(self):
        topic = parse_did(DID).topic
        assert len(topic) == 66
        assert topic.endswith(IDENTITY[2:].lower())
        assert topic[2:26] == "0" * 24

    @pytest.mark.parametrize("did", [
        "",
        "did:ethr",
        "did:ethr:0x1234",
        f"ethr:{IDENTITY}",
        f"did:ethr:volta:extra:{IDENTITY}",
    ])
    def test_invalid_did_rejected(self, did):
        with pytest.raises(InvalidDIDError):
            parse_did(did)

    def test_extract_address(self):
        assert extract_address(DID) == IDENTITY
        with pytest.raises(InvalidDIDError):
            extract_address("did:ethr:0x1234")


class TestAttributeNameParser:
    """Attribute names follow section/algorithm[/type][/encoding]."""

    def test_full_public_key_name(self):
        assert parse_attribute_name("pub/Secp256k1/veriKey/hex") == AttributeName(
            section="pub", algorithm="Secp256k1", type="veriKey", encoding="hex"
        )

    def test_service_name(self):
        parsed = parse_attribute_name("svc/MessagingService")
        assert parsed.section == "svc"
        assert parsed.algorithm == "MessagingService"
        assert parsed.type is None
        assert parsed.encoding is None

    def test_three_components(self):
        parsed = parse_attribute_name("pub/Ed25519/veriKey")
        assert parsed.type == "veriKey"
        assert parsed.encoding is None

    @pytest.mark.parametrize("name", [
        "noslash",
        "a/b/c/d/e",
        "pub/",
        "pub/with-dash",
        "/Secp256k1",
    ])
    def test_non_matching_names(self, name):
        assert parse_attribute_name(name) is None


# ============================================================
# EVENT CODEC
# ============================================================

class TestEventCodec:
    """Raw registry logs decode into typed events."""

    @pytest.fixture
    def codec(self):
        return EventCodec()

    def test_topics_are_event_signature_hashes(self, codec):
        expected = "0x" + keccak(text="DIDOwnerChanged(address,address,uint256)").hex()
        assert codec.topic_for(EventKind.OWNER_CHANGED) == expected
        assert set(codec.kinds) == set(EventKind)

    def test_decode_delegate_change(self, codec):
        log = codec.encode(
            EventKind.DELEGATE_CHANGED,
            IDENTITY,
            {"delegateType": "sigAuth", "delegate": DELEGATE.lower(),
             "validTo": FUTURE, "previousChange": 7},
            block_number=12,
            address=InMemoryLedger().registry_address,
        )
        event = codec.decode(log)

        assert event.kind == EventKind.DELEGATE_CHANGED
        assert event.identity == IDENTITY
        assert event.values["delegate"] == DELEGATE
        assert event.values["delegateType"].rstrip(b"\x00") == b"sigAuth"
        assert event.valid_to == FUTURE
        assert event.previous_change == 7
        assert event.block_number == 12

    def test_owner_change_has_no_validity(self, codec):
        log = codec.encode(
            EventKind.OWNER_CHANGED,
            IDENTITY,
            {"owner": NEW_OWNER, "previousChange": 0},
            block_number=3,
            address=InMemoryLedger().registry_address,
        )
        event = codec.decode(log)
        assert event.values["owner"] == NEW_OWNER
        assert event.valid_to is None

    def test_unknown_signature_rejected(self, codec):
        log = RawLog(
            address=InMemoryLedger().registry_address,
            topics=["0x" + "ff" * 32, parse_did(DID).topic],
            block_number=1,
        )
        with pytest.raises(DecodeError, match="Unrecognized event signature"):
            codec.decode(log)

    def test_log_without_topics_rejected(self, codec):
        with pytest.raises(DecodeError):
            codec.decode(RawLog(address=IDENTITY, topics=[], block_number=1))

    def test_truncated_data_rejected(self, codec):
        log = RawLog(
            address=InMemoryLedger().registry_address,
            topics=[codec.topic_for(EventKind.ATTRIBUTE_CHANGED), parse_did(DID).topic],
            data="0x1234",
            block_number=1,
        )
        with pytest.raises(DecodeError, match="Malformed"):
            codec.decode(log)


# ============================================================
# DOCUMENT REDUCER
# ============================================================

class TestDocumentReducer:
    """Events fold into a log document independently of their order."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, PAST, block=1)
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE, block=2)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), FUTURE, block=3
        )
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, FUTURE, block=4)
        return ledger

    @pytest.fixture
    def reducer(self):
        return DocumentReducer()

    def test_order_independent(self, ledger, reducer):
        """Every ordering of the history yields the same document."""
        events = decoded_history(ledger)
        documents = []
        for ordering in itertools.permutations(events):
            document = LogDocument()
            for event in ordering:
                reducer.apply(document, event, DID)
            documents.append(document)

        assert all(d == documents[0] for d in documents)
        key_id = f"{DID}#delegate-veriKey-{DELEGATE}"
        assert documents[0].public_key[key_id].validity == FUTURE
        assert documents[0].public_key[key_id].block == 2

    def test_replay_is_noop(self, ledger, reducer):
        events = decoded_history(ledger)
        document = LogDocument()
        for event in events:
            reducer.apply(document, event, DID)
        snapshot = document.model_copy(deep=True)

        outcomes = [reducer.apply(document, event, DID) for event in events]

        assert document == snapshot
        assert not any(o.applied for o in outcomes)

    def test_signature_authority_writes_key_and_authentication(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, FUTURE)
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)

        key_id = f"{DID}#delegate-sigAuth-{DELEGATE}"
        assert outcome.applied
        assert document.public_key[key_id].type == DELEGATE_KEY_TYPE
        assert document.public_key[key_id].controller == DID
        assert document.public_key[key_id].ethereum_address == DELEGATE
        assert document.authentication[key_id].public_key == key_id
        assert document.authentication[key_id].type == "sigAuth"

    def test_verification_key_writes_only_key(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE)
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)

        assert list(document.public_key) == [f"{DID}#delegate-veriKey-{DELEGATE}"]
        assert document.authentication == {}

    def test_unsupported_delegate_type_skipped(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "enc", DELEGATE, FUTURE)
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)

        assert not outcome.applied
        assert "unsupported delegate type" in outcome.reason
        assert document.public_key == {}

    def test_public_key_attribute(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY,
            "pub/Secp256k1/veriKey/hex",
            json.dumps({"tag": "key-1", "publicKey": "0xabc123"}),
            FUTURE,
            block=10,
        )
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)

        entry = document.public_key[f"{DID}#key-1"]
        assert entry.type == "Secp256k1veriKey"
        assert entry.controller == IDENTITY
        assert entry.public_key_hex == "0xabc123"
        assert entry.block == 10

    def test_base64_public_key_encodes_raw_value(self, reducer):
        value = json.dumps({"tag": "key-2"})
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "pub/Ed25519/veriKey/base64", value, FUTURE)
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)

        entry = document.public_key[f"{DID}#key-2"]
        assert entry.public_key_base64 == base64.b64encode(value.encode()).decode()
        assert entry.public_key_hex is None

    def test_pem_public_key_keeps_raw_text(self, reducer):
        value = json.dumps({"tag": "key-3", "publicKey": "0x01"})
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "pub/RSA/veriKey/pem", value, FUTURE)
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)

        entry = document.public_key[f"{DID}#key-3"]
        assert entry.type == "RSAveriKey"
        assert entry.public_key_pem == value
        assert entry.public_key_hex is None
        assert entry.public_key_base64 is None

    def test_unknown_encoding_has_no_key_material(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY, "pub/RSA/veriKey/zz", json.dumps({"tag": "key-4", "publicKey": "0x01"}), FUTURE
        )
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)

        assert outcome.applied
        entry = document.public_key[f"{DID}#key-4"]
        assert entry.public_key_hex is None
        assert entry.public_key_base64 is None
        assert entry.public_key_pem is None

    def test_missing_encoding_defaults_to_hex(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY, "pub/Secp256k1/veriKey", json.dumps({"tag": "key-5", "publicKey": "0x01"}), FUTURE
        )
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)

        entry = document.public_key[f"{DID}#key-5"]
        assert entry.public_key_hex == "0x01"
        assert entry.public_key_base64 is None
        assert entry.public_key_pem is None

    def test_malformed_public_key_ignored(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "pub/Secp256k1/veriKey/hex", "not json", FUTURE)
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)

        assert not outcome.applied
        assert document.public_key == {}

    def test_public_key_without_tag_ignored(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY, "pub/Secp256k1/veriKey/hex", json.dumps({"publicKey": "0x01"}), FUTURE
        )
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)
        assert outcome.reason == "public key payload has no tag"

    def test_malformed_service_raises(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "svc/HubService", "{broken", FUTURE)
        with pytest.raises(PayloadDecodeError):
            reducer.apply(LogDocument(), decoded_history(ledger)[0], DID)

    def test_service_without_id_raises(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps({"type": "HubService"}), FUTURE
        )
        with pytest.raises(PayloadDecodeError):
            reducer.apply(LogDocument(), decoded_history(ledger)[0], DID)

    def test_opaque_attribute_kept(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "nickname", "alice", FUTURE)
        document = LogDocument()
        reducer.apply(document, decoded_history(ledger)[0], DID)
        assert document.attributes["nickname"].attribute == "alice"

    def test_owner_change_is_noop(self, reducer):
        ledger = InMemoryLedger()
        ledger.record_owner_changed(IDENTITY, NEW_OWNER)
        document = LogDocument()
        outcome = reducer.apply(document, decoded_history(ledger)[0], DID)

        assert not outcome.applied
        assert outcome.reason == "no validity deadline"
        assert document == LogDocument()

    def test_unhandled_kind_with_validity_is_fatal(self, reducer):
        event = RegistryEvent(
            kind=EventKind.OWNER_CHANGED,
            identity=IDENTITY,
            values={"owner": NEW_OWNER, "validTo": FUTURE, "previousChange": 0},
            block_number=1,
        )
        with pytest.raises(UnhandledEventError):
            reducer.apply(LogDocument(), event, DID)


# ============================================================
# CHAIN WALKER
# ============================================================

class TestChainWalker:
    """The walker follows previousChange pointers down to genesis."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE, block=1)
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, FUTURE, block=2)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), FUTURE, block=3
        )
        return ledger

    @pytest.fixture
    def walker(self, ledger):
        return ChainWalker(ledger, retry=fast_retry())

    def test_empty_history(self, walker):
        result = walker.walk(parse_did(OTHER_DID))
        assert result.document.owner == OTHER_IDENTITY
        assert result.steps == 0
        assert result.complete
        assert result.document.public_key == {}

    def test_full_walk(self, ledger, walker):
        result = walker.walk(parse_did(DID))

        assert result.steps == 3
        assert result.complete
        assert result.resume_block == 0
        assert result.document.top_block == 3
        assert result.document.owner == IDENTITY
        assert len(result.document.public_key) == 2
        assert len(result.document.service) == 1
        assert ledger.calls["get_logs"] == 3

    def test_iter_changes_is_lazy(self, ledger, walker):
        steps = walker.iter_changes(parse_did(DID), start_block=3)
        first = next(steps)

        assert first.block == 3
        assert first.next_block == 2
        assert ledger.calls["get_logs"] == 1

    def test_owner_change_reported(self, ledger, walker):
        ledger.record_owner_changed(IDENTITY, NEW_OWNER)
        result = walker.walk(parse_did(DID))
        assert result.document.owner == NEW_OWNER
        assert any(o.reason == "no validity deadline" for o in result.skipped)

    def test_selector_stops_early(self, ledger, walker):
        selector = Selector.from_dict({"service": {"type": "HubService"}})
        result = walker.walk(parse_did(DID), selector=selector)

        assert result.steps == 1
        assert not result.complete
        assert result.resume_block == 2
        assert result.document.top_block == 3
        assert ledger.calls["get_logs"] == 1

    def test_selector_matching_at_genesis_is_complete(self):
        selector = Selector.from_dict({"publicKey": {"type": DELEGATE_KEY_TYPE}})
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE)
        result = ChainWalker(ledger).walk(parse_did(DID), selector=selector)
        assert result.complete

    def test_floor_bounds_the_walk(self, ledger, walker):
        result = walker.walk(parse_did(DID), document=LogDocument(top_block=2))

        assert result.steps == 2
        assert result.complete
        assert result.document.top_block == 3

    def test_seed_not_mutated(self, walker):
        seed = LogDocument(top_block=2)
        walker.walk(parse_did(DID), document=seed)
        assert seed == LogDocument(top_block=2)

    def test_several_changes_in_one_block(self):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(IDENTITY, "nickname", "first", FUTURE, block=5)
        ledger.record_attribute_changed(IDENTITY, "color", "blue", FUTURE, block=5)
        ledger.record_attribute_changed(IDENTITY, "nickname", "second", FUTURE, block=7)

        result = ChainWalker(ledger).walk(parse_did(DID))

        assert result.steps == 2
        assert result.document.attributes["nickname"].attribute == "second"
        assert result.document.attributes["color"].attribute == "blue"

    def test_other_identities_ignored(self, ledger, walker):
        ledger.record_attribute_changed(OTHER_IDENTITY, "nickname", "bob", FUTURE)
        result = walker.walk(parse_did(DID))
        assert result.document.attributes == {}

    def test_transient_failures_retried(self, ledger, walker):
        ledger.fail_next("get_logs", ConnectionError("node unavailable"), times=2)
        result = walker.walk(parse_did(DID))

        assert result.steps == 3
        assert ledger.calls["get_logs"] == 5

    def test_persistent_failure_raises(self, ledger):
        ledger.fail_next("get_logs", ConnectionError("node unavailable"), times=10)
        walker = ChainWalker(ledger, retry=fast_retry(attempts=2))
        with pytest.raises(LedgerReadError):
            walker.walk(parse_did(DID))

    def test_unanswered_change_block_is_unresolved(self, ledger):
        ledger.fail_next("changed", ConnectionError("node unavailable"))
        walker = ChainWalker(ledger, retry=RetryPolicy.no_retry())
        with pytest.raises(UnresolvedIdentityError):
            walker.walk(parse_did(DID))

    def test_cancelled_before_start(self, ledger, walker):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(TraversalCancelled):
            walker.walk(parse_did(DID), cancel=token)
        assert ledger.calls["changed"] == 0

    def test_cancelled_mid_walk(self, ledger, walker):
        token = CancellationToken()
        steps = walker.iter_changes(parse_did(DID), start_block=3, cancel=token)
        next(steps)
        token.cancel()
        with pytest.raises(TraversalCancelled):
            next(steps)

    def test_unrecognized_log_is_fatal(self, ledger, walker):
        ledger.inject_log(IDENTITY, RawLog(
            address=ledger.registry_address,
            topics=["0x" + "ee" * 32, parse_did(DID).topic],
            block_number=9,
        ))
        with pytest.raises(DecodeError):
            walker.walk(parse_did(DID))

    def test_block_without_events_is_fatal(self, ledger, walker):
        with pytest.raises(DecodeError, match="No registry event"):
            list(walker.iter_changes(parse_did(DID), start_block=99))


# ============================================================
# LOG MERGER
# ============================================================

class TestLogMerger:
    """Partial logs of disjoint block ranges merge into the full log."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, PAST, block=1)
        ledger.record_attribute_changed(IDENTITY, "nickname", "alice", FUTURE, block=2)
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE, block=4)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), FUTURE, block=6
        )
        ledger.record_owner_changed(IDENTITY, NEW_OWNER, block=8)
        return ledger

    @pytest.fixture
    def walker(self, ledger):
        return ChainWalker(ledger)

    def _partial_logs(self, walker, split_points):
        identity = parse_did(DID)
        blocks = [step.block for step in walker.iter_changes(identity, walker.latest_change(identity))]
        bounds = [0] + list(split_points) + [len(blocks)]

        logs = []
        for start, end in zip(bounds, bounds[1:]):
            logs.append(walker.walk(
                identity,
                document=LogDocument(top_block=blocks[end - 1]),
                start_block=blocks[start],
            ).document)
        return logs

    @pytest.mark.parametrize("split_points", [(1,), (2,), (1, 3), (1, 2, 3, 4)])
    def test_disjoint_ranges_equal_full_walk(self, walker, split_points):
        full = walker.walk(parse_did(DID)).document
        logs = self._partial_logs(walker, split_points)

        for ordering in itertools.permutations(logs):
            assert merge_logs(ordering) == full

    def test_inputs_untouched(self, walker):
        logs = self._partial_logs(walker, (2,))
        snapshots = [log.model_copy(deep=True) for log in logs]
        merge_logs(logs)
        assert logs == snapshots

    def test_newer_entries_win(self):
        key_id = f"{DID}#delegate-veriKey-{DELEGATE}"
        older = LogDocument.from_json_dict({
            "topBlock": 3,
            "owner": IDENTITY,
            "publicKey": {key_id: {
                "id": key_id, "type": DELEGATE_KEY_TYPE, "controller": DID,
                "validity": PAST, "block": 3,
            }},
        })
        newer = LogDocument.from_json_dict({
            "topBlock": 9,
            "owner": NEW_OWNER,
            "publicKey": {key_id: {
                "id": key_id, "type": DELEGATE_KEY_TYPE, "controller": DID,
                "validity": FUTURE, "block": 9,
            }},
        })

        merged = merge_logs([newer, older])

        assert merged.top_block == 9
        assert merged.owner == NEW_OWNER
        assert merged.public_key[key_id].validity == FUTURE

    def test_empty_input_rejected(self):
        with pytest.raises(ValueError):
            merge_logs([])


# ============================================================
# DOCUMENT BUILDER
# ============================================================

class TestDocumentBuilder:
    """Rendering keeps only entries that are still valid."""

    @pytest.fixture
    def builder(self):
        return DocumentBuilder(clock=lambda: NOW)

    @pytest.fixture
    def log(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, FUTURE)
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, PAST)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), NOW
        )
        return ChainWalker(ledger).walk(parse_did(DID)).document

    def test_empty_history_renders_owner_only(self, builder):
        document = builder.build(DID, LogDocument(owner=IDENTITY))

        assert document.id == DID
        assert document.authentication == [{"type": "owner", "publicKey": f"{DID}#owner"}]
        assert document.public_key == []
        assert document.service == []

    def test_expired_entries_dropped(self, builder, log):
        document = builder.build(DID, log)

        key_ids = [k["id"] for k in document.public_key]
        assert key_ids == [f"{DID}#delegate-sigAuth-{DELEGATE}"]
        # validity == now is already expired
        assert document.service == []
        assert len(document.authentication) == 2

    def test_extending_validity_renders_entry(self, log):
        document = DocumentBuilder(clock=lambda: NOW - 10).build(DID, log)
        assert [s["id"] for s in document.service] == [HUB_SERVICE["id"]]
        assert len(document.public_key) == 2

    def test_bookkeeping_stripped(self, builder, log):
        document = builder.build(DID, log)
        for entry in document.public_key + document.authentication:
            assert "validity" not in entry
            assert "block" not in entry

    def test_delegate_key_shape(self, builder, log):
        key = builder.build(DID, log).public_key[0]
        assert key == {
            "id": f"{DID}#delegate-sigAuth-{DELEGATE}",
            "type": DELEGATE_KEY_TYPE,
            "controller": DID,
            "ethereumAddress": DELEGATE,
        }

    def test_context_is_configurable(self, log):
        document = DocumentBuilder(context="https://example.com/ctx", clock=lambda: NOW).build(DID, log)
        assert document.to_json_dict()["@context"] == "https://example.com/ctx"

    def test_public_key_attribute_rendered(self, builder):
        ledger = InMemoryLedger()
        ledger.record_attribute_changed(
            IDENTITY,
            "pub/Secp256k1/veriKey/hex",
            json.dumps({"tag": "key-1", "publicKey": "0xabc123"}),
            FUTURE,
            block=10,
        )
        log = ChainWalker(ledger).walk(parse_did(DID)).document

        assert builder.build(DID, log).public_key == [{
            "id": f"{DID}#key-1",
            "type": "Secp256k1veriKey",
            "controller": IDENTITY,
            "publicKeyHex": "0xabc123",
        }]

    def test_document_from_logs(self, builder, log):
        document = document_from_logs(DID, [log], builder=builder)
        assert document == builder.build(DID, log)


# ============================================================
# SELECTOR MATCHER
# ============================================================

class TestSelectorMatcher:
    """Selectors find the first entry whose properties all match."""

    @pytest.fixture
    def log(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "veriKey", DELEGATE, FUTURE)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), FUTURE
        )
        return ChainWalker(ledger).walk(parse_did(DID)).document

    def test_match_on_rendered_document(self, log):
        document = DocumentBuilder(clock=lambda: NOW).build(DID, log)
        selector = Selector.from_dict({"publicKey": {"type": DELEGATE_KEY_TYPE}})

        match = query(document, selector)
        assert match["id"] == f"{DID}#delegate-veriKey-{DELEGATE}"

    def test_match_on_log_document(self, log):
        selector = Selector.from_dict({"service": {"serviceEndpoint": "https://hub.example.com"}})
        match = query(log, selector)
        assert match.id == HUB_SERVICE["id"]

    def test_all_conditions_required(self, log):
        selector = Selector.from_dict({"service": {"type": "HubService", "id": "nope"}})
        assert query(log, selector) is None

    def test_no_match(self, log):
        selector = Selector.from_dict({"publicKey": {"type": "Ed25519VerificationKey2018"}})
        assert query(log, selector) is None

    def test_falsy_property_never_matches(self, log):
        selector = Selector.from_dict({"publicKey": {"publicKeyHex": ""}})
        assert query(log, selector) is None

    def test_owner_authentication_selectable(self):
        document = DocumentBuilder(clock=lambda: NOW).build(DID, LogDocument(owner=IDENTITY))
        selector = Selector.from_dict({"authentication": {"type": "owner"}})
        assert query(document, selector) == {"type": "owner", "publicKey": f"{DID}#owner"}

    @pytest.mark.parametrize("raw", [
        {},
        {"publicKey": {}},
        {"publicKey": {"type": "x"}, "service": {"type": "y"}},
        {"controller": {"id": "x"}},
        {"service": "HubService"},
    ])
    def test_malformed_selector_rejected(self, raw):
        with pytest.raises(ValueError):
            Selector.from_dict(raw)

    def test_selector_round_trip(self):
        raw = {"service": {"type": "HubService"}}
        assert Selector.from_dict(raw).to_dict() == raw


# ============================================================
# RESOLVER SERVICE
# ============================================================

class TestResolver:
    """End-to-end resolution with caching and concurrency."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger()
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, FUTURE, block=1)
        ledger.record_attribute_changed(
            IDENTITY, "svc/HubService", json.dumps(HUB_SERVICE), FUTURE, block=2
        )
        return ledger

    @pytest.fixture
    def store(self):
        return InMemoryLogStore()

    @pytest.fixture
    def resolver(self, ledger, store):
        get_metrics().reset()
        return Resolver(
            ledger,
            store=store,
            config=ResolverConfig(retry_attempts=2, retry_base_delay=0),
            builder=DocumentBuilder(clock=lambda: NOW),
        )

    def test_resolve(self, resolver):
        document = resolver.resolve(DID)

        assert document.id == DID
        assert len(document.public_key) == 1
        assert len(document.authentication) == 2
        assert document.service == [HUB_SERVICE]

    def test_empty_history(self, resolver):
        document = resolver.resolve(OTHER_DID)
        assert document.public_key == []
        assert document.authentication == [{"type": "owner", "publicKey": f"{OTHER_DID}#owner"}]
        assert resolver.read_log(OTHER_DID).owner == OTHER_IDENTITY

    def test_invalid_did(self, resolver):
        with pytest.raises(InvalidDIDError):
            resolver.resolve("did:ethr:not-an-address")

    def test_cache_outage_falls_back_to_full_walk(self, resolver, store, monkeypatch):
        def unavailable(*args):
            raise LogStoreError("connection refused")

        monkeypatch.setattr(store, "get", unavailable)
        monkeypatch.setattr(store, "save", unavailable)

        document = resolver.resolve(DID)

        assert document.service == [HUB_SERVICE]
        assert len(document.public_key) == 1

    def test_complete_walk_is_cached(self, resolver, store):
        resolver.read_log(DID)
        cached = store.get(DID)
        assert cached is not None
        assert cached.top_block == 2

    def test_resume_from_cache(self, resolver, ledger):
        resolver.read_log(DID)
        assert ledger.calls["get_logs"] == 2

        ledger.record_attribute_changed(IDENTITY, "nickname", "alice", FUTURE, block=5)
        log = resolver.read_log(DID)

        # Only the new block and the cached top block are read again
        assert ledger.calls["get_logs"] == 4
        assert log.top_block == 5
        assert log.attributes["nickname"].attribute == "alice"
        assert len(log.service) == 1
        assert len(log.public_key) == 1

    def test_resumed_log_equals_fresh_walk(self, resolver, ledger):
        resolver.read_log(DID)
        ledger.record_delegate_changed(IDENTITY, "sigAuth", DELEGATE, PAST, block=6)
        ledger.record_owner_changed(IDENTITY, NEW_OWNER, block=7)

        resumed = resolver.read_log(DID)
        fresh = ChainWalker(ledger).walk(parse_did(DID)).document

        assert resumed == fresh
        assert resumed.owner == NEW_OWNER

    def test_read_stops_early_and_is_not_cached(self, resolver, ledger, store):
        match = resolver.read(DID, {"service": {"type": "HubService"}})

        assert match == HUB_SERVICE
        assert ledger.calls["get_logs"] == 1
        assert store.get(DID) is None

    def test_read_without_match(self, resolver):
        assert resolver.read(DID, {"service": {"type": "Unknown"}}) is None

    def test_read_rejects_malformed_selector(self, resolver):
        with pytest.raises(ValueError):
            resolver.read(DID, {"bogus": {"type": "x"}})

    def test_malformed_service_fails_resolution(self, resolver, ledger):
        ledger.record_attribute_changed(IDENTITY, "svc/HubService", "not json", FUTURE)
        with pytest.raises(PayloadDecodeError):
            resolver.resolve(DID)

    def test_malformed_public_key_ignored(self, resolver, ledger):
        ledger.record_attribute_changed(IDENTITY, "pub/Secp256k1/veriKey/hex", "not json", FUTURE)
        assert len(resolver.resolve(DID).public_key) == 1

    def test_owner_of(self, resolver, ledger):
        assert resolver.owner_of(DID) == IDENTITY
        ledger.record_owner_changed(IDENTITY, NEW_OWNER)
        assert resolver.owner_of(DID) == NEW_OWNER
        assert ledger.calls["get_logs"] == 0

    def test_resolve_many(self, resolver, ledger):
        ledger.record_attribute_changed(OTHER_IDENTITY, "nickname", "bob", FUTURE)
        results = resolver.resolve_many([DID, OTHER_DID, "did:bad"])

        assert results[DID].service == [HUB_SERVICE]
        assert results[OTHER_DID].id == OTHER_DID
        assert isinstance(results["did:bad"], InvalidDIDError)

    def test_resolve_many_empty(self, resolver):
        assert resolver.resolve_many([]) == {}

    def test_metrics_recorded(self, resolver):
        resolver.resolve(DID)
        with pytest.raises(InvalidDIDError):
            resolver.resolve("did:bad")

        summary = get_metrics().get_summary()
        assert summary["resolutions_total"] == 2
        assert summary["resolutions_failed"] == 1
        assert summary["blocks_walked"] == 2

    def test_retries_counted(self, resolver, ledger):
        ledger.fail_next("get_logs", ConnectionError("node unavailable"))
        resolver.resolve(DID)
        assert get_metrics().get_summary()["ledger_retries"] == 1

    def test_without_store(self, ledger):
        resolver = Resolver(ledger, builder=DocumentBuilder(clock=lambda: NOW))
        resolver.read_log(DID)
        resolver.read_log(DID)
        assert ledger.calls["get_logs"] == 4
