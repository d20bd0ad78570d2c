"""
Resolver Service

The single entry point for resolving DIDs. It wires the chain walker, the
log cache and the document builder together.

RESOLUTION FLOW:
1. Parse the DID into an Identity (InvalidDIDError on failure)
2. Load the cached LogDocument, if any; its topBlock is the floor
3. Walk the chain from changed(identity) down to the floor
4. Merge cached + fresh logs (fresh entries win)
5. Cache the merged log, only if the walk was complete
6. Render the DID document

Point queries (read) use a selector to stop the walk early. Such walks are
truncated and are never cached.

Usage:
    resolver = create_resolver()
    document = resolver.resolve("did:ethr:0x...")
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from ..errors import LogStoreError
from ..schemas import (
    DEFAULT_CONTEXT,
    LogDocument,
    RenderedDocument,
    Selector,
    parse_did,
)
from ..observability import get_metrics
from .builder import DocumentBuilder
from .merger import merge_logs
from .retry import CancellationToken, RetryPolicy
from .selector import query
from .walker import ChainWalker, WalkResult

if TYPE_CHECKING:
    from ..db.store import LogStore
    from ..ledger.reader import LedgerReader

logger = logging.getLogger(__name__)


@dataclass
class ResolverConfig:
    """
    Resolver tuning.

    Environment Variables:
        DIDCHAIN_DID_CONTEXT: @context of rendered documents
        DIDCHAIN_MAX_WORKERS: Concurrent traversals in resolve_many (default 4)
        DIDCHAIN_RETRY_ATTEMPTS: Attempts per ledger read (default 3)
        DIDCHAIN_RETRY_BASE_DELAY: First backoff delay in seconds (default 0.5)
        DIDCHAIN_RETRY_MAX_DELAY: Backoff ceiling in seconds (default 10)
    """
    context: str = DEFAULT_CONTEXT
    max_workers: int = 4
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        """Load configuration from environment variables."""
        return cls(
            context=os.getenv("DIDCHAIN_DID_CONTEXT", DEFAULT_CONTEXT),
            max_workers=int(os.getenv("DIDCHAIN_MAX_WORKERS", "4")),
            retry_attempts=int(os.getenv("DIDCHAIN_RETRY_ATTEMPTS", "3")),
            retry_base_delay=float(os.getenv("DIDCHAIN_RETRY_BASE_DELAY", "0.5")),
            retry_max_delay=float(os.getenv("DIDCHAIN_RETRY_MAX_DELAY", "10")),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay,
            max_delay_seconds=self.retry_max_delay,
            on_retry=lambda attempt, exc, delay: get_metrics().record_retry(),
        )


class Resolver:
    """
    Resolves DIDs against one registry.

    Thread-safe: every traversal owns its document, and the walker, cache
    and builder hold no per-resolution state.
    """

    def __init__(
        self,
        ledger: "LedgerReader",
        store: Optional["LogStore"] = None,
        config: Optional[ResolverConfig] = None,
        builder: Optional[DocumentBuilder] = None,
        walker: Optional[ChainWalker] = None,
    ):
        """
        Args:
            ledger: Registry reader
            store: Log cache; None disables caching
            config: Resolver tuning (defaults to ResolverConfig())
            builder: Document renderer (defaults to one using config.context)
            walker: Chain walker (defaults to one using config's retry policy)
        """
        self.ledger = ledger
        self.store = store
        self.config = config or ResolverConfig()
        self.builder = builder or DocumentBuilder(context=self.config.context)
        self.walker = walker or ChainWalker(ledger, retry=self.config.retry_policy())

    # ================================================================
    # LOG LEVEL
    # ================================================================

    def _load_cached(self, did: str) -> Optional[LogDocument]:
        if self.store is None:
            return None
        try:
            return self.store.get(did)
        except LogStoreError as e:
            logger.error(f"Log cache read failed for {did}: {e}; walking the full chain")
            return None

    def _save_cached(self, did: str, log: LogDocument) -> None:
        if self.store is None:
            return
        try:
            self.store.save(did, log)
        except LogStoreError as e:
            logger.error(f"Log cache write failed for {did}: {e}")

    def _walk(
        self,
        did: str,
        selector: Optional[Selector] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> tuple[LogDocument, WalkResult, bool]:
        identity = parse_did(did)
        cached = self._load_cached(did)

        seed = LogDocument(top_block=cached.top_block) if cached is not None else None
        result = self.walker.walk(identity, document=seed, selector=selector, cancel=cancel)

        if cached is not None:
            log = merge_logs([cached, result.document])
        else:
            log = result.document

        if result.complete:
            self._save_cached(did, log)

        return log, result, cached is not None

    def _timed(self, did: str, func, *args):
        start = time.perf_counter()
        try:
            value, result, cache_hit = func(did, *args)
        except Exception:
            get_metrics().record_resolution((time.perf_counter() - start) * 1000, success=False)
            raise
        get_metrics().record_resolution(
            (time.perf_counter() - start) * 1000,
            success=True,
            blocks=result.steps,
            cache_hit=cache_hit,
        )
        return value

    def read_log(self, did: str, cancel: Optional[CancellationToken] = None) -> LogDocument:
        """
        The full LogDocument of a DID, resumed from the cache when possible.

        Raises:
            InvalidDIDError, UnresolvedIdentityError, DecodeError,
            LedgerReadError, TraversalCancelled
        """
        def run(did, cancel):
            log, result, cache_hit = self._walk(did, cancel=cancel)
            logger.info(
                f"Read log for {did}: {result.steps} block(s) walked, "
                f"topBlock={log.top_block}, cached={cache_hit}"
            )
            return log, result, cache_hit

        return self._timed(did, run, cancel)

    # ================================================================
    # DOCUMENT LEVEL
    # ================================================================

    def resolve(self, did: str, cancel: Optional[CancellationToken] = None) -> RenderedDocument:
        """Resolve a DID to its current DID document."""
        return self.builder.build(did, self.read_log(did, cancel=cancel))

    def read(
        self,
        did: str,
        selector: Union[Selector, dict[str, Any]],
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[dict[str, Any]]:
        """
        Point query: the first rendered entry matching the selector.

        The walk stops as soon as the selector matches, so only the
        newest part of the chain may be read.

        Returns:
            The matching entry, or None
        """
        if not isinstance(selector, Selector):
            selector = Selector.from_dict(selector)

        def run(did, selector, cancel):
            log, result, cache_hit = self._walk(did, selector=selector, cancel=cancel)
            match = query(self.builder.build(did, log), selector)
            logger.info(
                f"Read {selector.category.value} of {did}: "
                f"{'match' if match is not None else 'no match'} after {result.steps} block(s)"
            )
            return match, result, cache_hit

        return self._timed(did, run, selector, cancel)

    def resolve_many(
        self,
        dids: Iterable[str],
        cancel: Optional[CancellationToken] = None,
    ) -> dict[str, Union[RenderedDocument, Exception]]:
        """
        Resolve independent DIDs concurrently.

        Each DID maps to its document or to the exception its resolution
        raised; one failure does not affect the others.
        """
        dids = list(dict.fromkeys(dids))
        results: dict[str, Union[RenderedDocument, Exception]] = {}
        if not dids:
            return results

        workers = max(1, min(self.config.max_workers, len(dids)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="didchain-resolve") as pool:
            futures = {did: pool.submit(self.resolve, did, cancel) for did in dids}
            for did, future in futures.items():
                error = future.exception()
                if error is not None:
                    logger.warning(f"Resolution of {did} failed: {error}")
                    results[did] = error
                else:
                    results[did] = future.result()

        return results

    def owner_of(self, did: str, cancel: Optional[CancellationToken] = None) -> str:
        """Current owner of a DID, without walking its history."""
        identity = parse_did(did)
        if self.walker.latest_change(identity, cancel) == 0:
            return identity.address
        return self.walker.read_owner(identity, cancel)


def create_resolver(config: Optional[ResolverConfig] = None) -> Resolver:
    """
    Create a Resolver from environment configuration.

    The ledger reader and the log store are chosen by their own
    configuration (see didchain.ledger.config and didchain.db.config).
    """
    from ..db.store import create_log_store
    from ..ledger.reader import create_ledger_reader

    config = config or ResolverConfig.from_env()
    ledger = create_ledger_reader()
    store = create_log_store()
    logger.info(
        f"Resolver ready: ledger={type(ledger).__name__} "
        f"registry={ledger.registry_address} store={type(store).__name__}"
    )
    return Resolver(ledger, store=store, config=config)
