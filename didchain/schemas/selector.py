"""
Document Selector Schema

A selector names one entry category and a conjunction of property
equalities, e.g. {"publicKey": {"type": "Secp256k1VerificationKey2018"}}.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SelectorCategory(str, Enum):
    """Entry collections a selector can target."""
    PUBLIC_KEY = "publicKey"
    AUTHENTICATION = "authentication"
    SERVICE = "service"


class Selector(BaseModel):
    """Typed predicate over one entry category."""
    model_config = ConfigDict(frozen=True)

    category: SelectorCategory
    conditions: dict[str, Any] = Field(
        ...,
        min_length=1,
        description="Property name (JSON alias) -> required value"
    )

    @classmethod
    def from_dict(cls, selector: dict[str, Any]) -> "Selector":
        """
        Build a selector from its one-field JSON form.

        Raises ValueError if the shape is wrong or the category unknown.
        """
        if not isinstance(selector, dict) or len(selector) != 1:
            raise ValueError(
                f"Selector must have exactly one category, got: {selector!r}"
            )
        category, conditions = next(iter(selector.items()))
        if not isinstance(conditions, dict) or not conditions:
            raise ValueError(
                f"Selector conditions for {category!r} must be a non-empty object"
            )
        try:
            category = SelectorCategory(category)
        except ValueError:
            raise ValueError(
                f"Unknown selector category {category!r}. "
                f"Valid values: {[c.value for c in SelectorCategory]}"
            )
        return cls(category=category, conditions=conditions)

    def to_dict(self) -> dict[str, Any]:
        return {self.category.value: dict(self.conditions)}
