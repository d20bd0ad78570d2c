"""
Attribute name grammar.

Attribute names are fixed-width strings of the form

    section/algorithm[/type][/encoding]

e.g. "pub/Secp256k1/veriKey/hex" or "svc/MessagingService". The match is
purely syntactic; individual components are not validated here.
"""

import re
from typing import NamedTuple, Optional


ATTRIBUTE_NAME_PATTERN = re.compile(r"^(\w+)/(\w+)(/(\w+))?(/(\w+))?$", re.ASCII)

SECTION_PUBLIC_KEY = "pub"
SECTION_SERVICE = "svc"


class AttributeName(NamedTuple):
    section: str
    algorithm: str
    type: Optional[str] = None
    encoding: Optional[str] = None


def parse_attribute_name(name: str) -> Optional[AttributeName]:
    """Split an attribute name into its components, or None if it does not match."""
    match = ATTRIBUTE_NAME_PATTERN.match(name)
    if not match:
        return None
    return AttributeName(
        section=match.group(1),
        algorithm=match.group(2),
        type=match.group(4),
        encoding=match.group(6),
    )
