"""
Chain Walker

Replays one identity's change history by walking the registry's
backward-linked chain:

    changed(identity) -> block N
    logs at N         -> events, each with previousChange -> block M < N
    logs at M         -> ...
    ...               -> previousChange == 0 (genesis)

Each step depends on the pointer decoded in the previous one, so a single
traversal is strictly sequential. Independent traversals share nothing and
may run concurrently; LogMerger joins their results.

CHAIN GUARANTEES (enforced in code):
- A visited block must contain at least one event for the identity
- The pointer followed out of a block is strictly below it, so every
  traversal terminates
- Several changes in one block are replayed newest first
- The walk stops at genesis, below the seeded floor (topBlock), or as soon
  as the optional selector matches the in-progress document
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterator, Optional, TypeVar

from ..errors import DecodeError, LedgerReadError, UnresolvedIdentityError
from ..schemas import Identity, LogDocument, RegistryEvent, Selector
from .codec import EventCodec
from .reducer import DocumentReducer, ReduceOutcome
from .retry import CancellationToken, RetryExhaustedError, RetryPolicy
from .selector import query

if TYPE_CHECKING:
    from ..ledger.reader import LedgerReader

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChainStep:
    """One visited block of the chain."""
    block: int
    events: list[RegistryEvent]
    next_block: int


@dataclass
class WalkResult:
    """
    Outcome of one traversal.

    complete is False only when the selector stopped the walk before the
    floor or genesis; resume_block is then the next unvisited change.
    """
    document: LogDocument
    steps: int
    complete: bool
    resume_block: int
    outcomes: list[ReduceOutcome] = field(default_factory=list)

    @property
    def skipped(self) -> list[ReduceOutcome]:
        return [o for o in self.outcomes if not o.applied]


class ChainWalker:
    """
    Walks the registry chain for one identity at a time.

    The walker holds no per-traversal state; one instance can serve any
    number of concurrent traversals.
    """

    def __init__(
        self,
        ledger: "LedgerReader",
        codec: Optional[EventCodec] = None,
        reducer: Optional[DocumentReducer] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self._ledger = ledger
        self._codec = codec or EventCodec()
        self._reducer = reducer or DocumentReducer()
        self._retry = retry or RetryPolicy()

    def _read(self, func: Callable[[], T], cancel: Optional[CancellationToken], what: str) -> T:
        try:
            return self._retry.execute(func, cancel=cancel)
        except RetryExhaustedError as e:
            raise LedgerReadError(f"Ledger read failed ({what}): {e.last_exception}") from e

    def latest_change(self, identity: Identity, cancel: Optional[CancellationToken] = None) -> int:
        """
        Block of the identity's most recent change (0 if it never changed).

        Raises UnresolvedIdentityError if the registry cannot answer.
        """
        try:
            return int(self._retry.execute(
                lambda: self._ledger.changed(identity.address), cancel=cancel
            ))
        except RetryExhaustedError as e:
            raise UnresolvedIdentityError(
                f"Blockchain address {identity.address} did not interact with the registry"
            ) from e

    def read_owner(self, identity: Identity, cancel: Optional[CancellationToken] = None) -> str:
        """Current owner of an identity that has a change history."""
        return self._read(lambda: self._ledger.owners(identity.address), cancel, "owners")

    def iter_changes(
        self,
        identity: Identity,
        start_block: int,
        floor: int = 0,
        cancel: Optional[CancellationToken] = None,
    ) -> Iterator[ChainStep]:
        """
        Lazily yield the chain's blocks from start_block down to genesis
        or the floor (inclusive).

        Raises DecodeError if a block holds no event for the identity or
        its pointers do not lead to an earlier block.
        """
        registry = self._ledger.registry_address
        topics = [None, identity.topic]
        next_block = start_block

        while next_block != 0 and next_block >= floor:
            if cancel is not None:
                cancel.raise_if_cancelled()

            block = next_block
            logs = self._read(
                lambda: self._ledger.get_logs(registry, block, block, topics),
                cancel,
                f"logs at block {block}",
            )
            events = [self._codec.decode(log) for log in logs]
            events = [e for e in events if e.identity.lower() == identity.address.lower()]
            if not events:
                raise DecodeError(
                    f"No registry event for {identity.address} at block {block}"
                )
            events.sort(key=lambda e: e.log_index, reverse=True)

            earlier = [e.previous_change for e in events if e.previous_change < block]
            if not earlier:
                raise DecodeError(
                    f"Change chain for {identity.address} does not advance past block {block}"
                )
            next_block = max(earlier)

            yield ChainStep(block=block, events=events, next_block=next_block)

    def walk(
        self,
        identity: Identity,
        document: Optional[LogDocument] = None,
        selector: Optional[Selector] = None,
        cancel: Optional[CancellationToken] = None,
        start_block: Optional[int] = None,
    ) -> WalkResult:
        """
        Replay the identity's history into a LogDocument.

        Args:
            identity: The identity to walk
            document: Seed document; its top_block is the floor. It is
                copied, never mutated.
            selector: Stop as soon as the in-progress document matches
            cancel: Cancellation token checked before every read
            start_block: Start from this change block instead of
                changed(identity)

        Returns:
            WalkResult whose document.top_block is the starting block
        """
        document = document.model_copy(deep=True) if document is not None else LogDocument()

        if start_block is None:
            start_block = self.latest_change(identity, cancel)

        if start_block == 0:
            # Never changed: the identity owns itself and has no history
            document.owner = identity.address
            return WalkResult(document=document, steps=0, complete=True, resume_block=0)

        document.owner = self.read_owner(identity, cancel)

        floor = document.top_block
        steps = 0
        resume_block = start_block
        stopped_by_selector = False
        outcomes: list[ReduceOutcome] = []

        for step in self.iter_changes(identity, start_block, floor, cancel):
            for event in step.events:
                outcomes.append(self._reducer.apply(document, event, identity.did))
            steps += 1
            resume_block = step.next_block

            if selector is not None and query(document, selector) is not None:
                stopped_by_selector = True
                break

        complete = not stopped_by_selector or resume_block == 0 or resume_block < floor
        document.top_block = start_block

        logger.debug(
            f"Walked {steps} block(s) for {identity.did} from {start_block} "
            f"(floor={floor}, complete={complete})"
        )
        return WalkResult(
            document=document,
            steps=steps,
            complete=complete,
            resume_block=0 if complete else resume_block,
            outcomes=outcomes,
        )
