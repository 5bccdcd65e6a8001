"""
Intent Model - Canonical intent contract for the voice agent.

This module defines the structured representation of a customer's utterance
after it has been classified by the LLM. It serves as the contract between
the intent classifier adapter and the dispatcher.

Responsibilities:
- Define allowed intent types (closed enum)
- Define classifier output fields with types
- Enforce structural constraints via validation
- NO business logic
- NO ToolProvider access (vocabulary checks live in the classifier adapter)
- NO LLM logic
"""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class IntentType(str, Enum):
    """
    The purpose of an utterance.

    On-topic intents reach the catalog; off-topic intents count against
    the patience limit.
    """
    STOCK = "stock"                     # Stock for a numeric product ID
    POLICY = "policy"                   # Returns, refunds, shipping, ...
    PRODUCT_SEARCH = "product_search"   # Find products by attributes
    CATEGORIES = "categories"           # What do you sell?
    GENERAL = "general"                 # Greetings and chit-chat
    UNKNOWN = "unknown"                 # Could not classify


OFF_TOPIC_INTENTS = frozenset({IntentType.GENERAL, IntentType.UNKNOWN})

# Top-level params that must be plain strings when present
STRING_PARAMS = ("category", "searchTerm", "policyType")
PRICE_PARAMS = ("minPrice", "maxPrice")


class Vocabulary(BaseModel):
    """
    Live catalog vocabulary the classifier is grounded in.

    Fetched from the ToolProvider on every classification so the
    classifier never works from a stale hard-coded list.
    """
    categories: List[str] = Field(default_factory=list)
    product_types: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    genders: List[str] = Field(default_factory=list)
    seasons: List[str] = Field(default_factory=list)
    usages: List[str] = Field(default_factory=list)

    def values_for(self, source: str) -> List[str]:
        """Return the vocabulary list named by an attribute map source."""
        return list(getattr(self, source, []) or [])


class ClassifiedIntent(BaseModel):
    """
    Validated classifier output.

    Constraints:
    - intent is a member of IntentType
    - confidence is within [0, 1]
    - stock productId, when present, is numeric (normalized to a string)
    - minPrice / maxPrice are non-negative numbers
    - inStock is a boolean, limit a positive integer
    - attributes is a mapping

    Examples:
        ClassifiedIntent(
            intent=IntentType.STOCK,
            confidence=0.97,
            params={"productId": "12345"},
            reasoning="Asks about stock of a numbered product",
        )
    """
    intent: IntentType = Field(..., description="Classified intent")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Classifier confidence")
    params: Dict[str, Any] = Field(default_factory=dict, description="Extracted parameters")
    reasoning: str = Field(default="", description="Short classifier rationale")

    model_config = ConfigDict(extra="ignore")

    @field_validator("params", mode="before")
    @classmethod
    def drop_null_params(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {k: v for k, v in value.items() if v is not None}
        return value

    @model_validator(mode="after")
    def validate_params(self) -> "ClassifiedIntent":
        """Enforce per-field types the dispatcher relies on."""
        params = dict(self.params)

        product_id = params.get("productId")
        if self.intent == IntentType.STOCK and product_id is not None:
            if isinstance(product_id, bool):
                raise ValueError("productId must be numeric")
            if isinstance(product_id, int):
                product_id = str(product_id)
            if not isinstance(product_id, str) or not product_id.strip().isdigit():
                raise ValueError(f"productId must be numeric, got {product_id!r}")
            params["productId"] = product_id.strip()

        for key in PRICE_PARAMS:
            if key in params:
                value = params[key]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"{key} must be a number, got {value!r}")
                if value < 0:
                    raise ValueError(f"{key} must not be negative")

        if "inStock" in params and not isinstance(params["inStock"], bool):
            raise ValueError("inStock must be a boolean")

        if "limit" in params:
            limit = params["limit"]
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
                raise ValueError("limit must be a positive integer")

        if "attributes" in params and not isinstance(params["attributes"], dict):
            raise ValueError("attributes must be an object")

        for key in STRING_PARAMS:
            if key in params and not isinstance(params[key], str):
                raise ValueError(f"{key} must be a string")

        self.params = params
        return self
