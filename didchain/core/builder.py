"""
Document Builder

Renders a (merged) LogDocument into the DID document shared with the
outside world.

RENDERING RULES:
1. authentication always starts with the implicit owner entry
   {"type": "owner", "publicKey": "<did>#owner"}
2. An entry is included only if validity > now (integer seconds)
3. validity and block are stripped from every rendered entry
4. Entries keep the insertion order of the log document
"""

import time
from typing import Callable, Iterable, Optional

from ..schemas import DEFAULT_CONTEXT, LogDocument, RenderedDocument
from .merger import merge_logs


class DocumentBuilder:
    """
    Builds RenderedDocuments.

    context is configuration (DIDCHAIN_DID_CONTEXT); clock is injectable
    so validity filtering can be tested against a fixed "now".
    """

    def __init__(
        self,
        context: str = DEFAULT_CONTEXT,
        clock: Callable[[], float] = time.time,
    ):
        self.context = context
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def build(self, did: str, log: LogDocument, now: Optional[int] = None) -> RenderedDocument:
        """Render a log document; the log is not modified."""
        now = self.now() if now is None else now

        authentication = [{"type": "owner", "publicKey": f"{did}#owner"}]
        authentication.extend(
            a.rendered() for a in log.authentication.values() if a.validity > now
        )

        return RenderedDocument(
            context=self.context,
            id=did,
            public_key=[k.rendered() for k in log.public_key.values() if k.validity > now],
            authentication=authentication,
            service=[s.rendered() for s in log.service.values() if s.validity > now],
        )


def document_from_logs(
    did: str,
    logs: Iterable[LogDocument],
    builder: Optional[DocumentBuilder] = None,
) -> RenderedDocument:
    """Merge partial logs and render the result."""
    return (builder or DocumentBuilder()).build(did, merge_logs(logs))
