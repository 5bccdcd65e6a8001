"""
Dispatcher - maps a classified intent to a ToolProvider call and a reply.

RESPONSIBILITIES:
1. Pick the tool (or none) for each intent
2. Normalize classifier params into the tool's argument shape
3. Turn the tool payload into one spoken-style sentence
4. Convert every dependency failure into an apology + PipelineFailure

This module does NOT:
- Classify (intent_classifier)
- Count off-topic turns (patience_limiter)
- Retry: each tool is called at most once per request, except the single
  FAQ fallback read for policies
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from voice_agent.config import DEFAULT_SEARCH_LIMIT, POLICY_SUMMARY_CHARS
from voice_agent.models.intent import IntentType
from voice_agent.services.attribute_mapper import AttributeMapper
from voice_agent.services.pipeline_errors import (
    GENERIC_APOLOGY,
    FailureKind,
    MalformedResultError,
    PipelineFailure,
    failure_from_exception,
)
from voice_agent.services.tool_provider_client import (
    ToolProviderClient,
    ToolProviderError,
    ToolProviderResponseError,
)

logger = logging.getLogger(__name__)

STAGE = "dispatch"

FAQ_URI = "file://docs/faq.txt"
POLICY_URI_TEMPLATE = "file://docs/{policy_type}_policy.txt"
POLICY_TYPE_PATTERN = re.compile(r"^[a-z0-9_]+$")
PRICE_PATTERN = re.compile(r"\$?\s*(\d+(?:\.\d+)?)")
PRODUCT_PREVIEW_COUNT = 3

GREETING_MESSAGE = (
    "Hello! I'm your retail assistant. I can help you search for products, "
    "check stock availability, or answer questions about our store policies. "
    "How can I assist you today?"
)
CLARIFICATION_MESSAGE = "I'm sorry, I didn't understand your request. Could you please rephrase?"
MISSING_PRODUCT_ID_MESSAGE = "I need a product ID to check stock. Could you provide the product ID?"
NO_CATEGORIES_MESSAGE = "I couldn't retrieve the categories at this moment."
NO_PRODUCTS_MESSAGE = (
    "I couldn't find any products matching your criteria. "
    "Would you like to try a different search?"
)
FAQ_PREFIX = "Here's some general information that might help: "
POLICY_MORE_SUFFIX = "... Would you like more details?"


@dataclass
class DispatchResult:
    response_text: str
    tool_name: Optional[str] = None
    tool_result: Optional[str] = None
    failure: Optional[PipelineFailure] = None


# =============================================================================
# PARAM NORMALIZATION
# =============================================================================

def extract_price(key: str, value: Any) -> Dict[str, float]:
    """
    Read a price bound out of an attribute like {"price": "under $60"}.

    "under"/"less" -> maxPrice, "over"/"more" -> minPrice, no keyword -> {}.
    """
    text = str(value)
    match = PRICE_PATTERN.search(text)
    if not match:
        return {}

    amount = float(match.group(1))
    if amount.is_integer():
        amount = int(amount)

    lowered = f"{key} {text}".lower()
    if "under" in lowered or "less" in lowered:
        return {"maxPrice": amount}
    if "over" in lowered or "more" in lowered:
        return {"minPrice": amount}
    return {}


def normalize_search_params(
    params: Dict[str, Any],
    attribute_mapper: AttributeMapper,
    default_limit: int = DEFAULT_SEARCH_LIMIT,
) -> Dict[str, Any]:
    """Build query_products arguments from classifier params."""
    search: Dict[str, Any] = {}

    if params.get("category"):
        search["category"] = params["category"]

    attributes: Dict[str, Any] = {}
    for key, value in (params.get("attributes") or {}).items():
        if "price" in str(key).lower():
            search.update(extract_price(key, value))
            continue
        attributes[attribute_mapper.resolve(key) or key] = value
    if attributes:
        search["attributes"] = attributes

    # Explicit bounds win over ones parsed from attributes
    for bound in ("minPrice", "maxPrice"):
        if params.get(bound) is not None:
            search[bound] = params[bound]

    if params.get("searchTerm"):
        search["searchTerm"] = params["searchTerm"]
    if params.get("inStock") is not None:
        search["inStock"] = params["inStock"]

    search["limit"] = params.get("limit") or default_limit
    return search


def _product_name(product: Dict[str, Any]) -> str:
    for key in ("productName", "product_name", "productDisplayName", "product_display_name"):
        if product.get(key):
            return str(product[key])
    return "Unknown product"


def format_products(products: List[Dict[str, Any]]) -> str:
    count = len(products)
    options = ", ".join(
        f"{_product_name(p)} for ${p['price']}" if p.get("price") is not None
        else f"{_product_name(p)} (price not available)"
        for p in products[:PRODUCT_PREVIEW_COUNT]
    )
    remaining = count - PRODUCT_PREVIEW_COUNT
    more = f", and {remaining} more" if remaining > 0 else ""
    noun = "product" if count == 1 else "products"
    return f"I found {count} {noun}. Here are some options: {options}{more}."


def _expect(data: Any, kind: type, tool_name: str, raw: str) -> Any:
    if not isinstance(data, kind):
        raise MalformedResultError(
            f"Tool '{tool_name}' returned {type(data).__name__}, expected {kind.__name__}",
            raw=raw,
        )
    return data


# =============================================================================
# DISPATCHER
# =============================================================================

class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(tool_provider, mapper)
        result = await dispatcher.dispatch(IntentType.STOCK, {"productId": "12345"})
        result.response_text  # "Yes, product 12345 is in stock. ..."
    """

    def __init__(
        self,
        tool_provider: ToolProviderClient,
        attribute_mapper: AttributeMapper,
        default_search_limit: int = DEFAULT_SEARCH_LIMIT,
        policy_summary_chars: int = POLICY_SUMMARY_CHARS,
    ):
        self.tool_provider = tool_provider
        self.attribute_mapper = attribute_mapper
        self.default_search_limit = default_search_limit
        self.policy_summary_chars = policy_summary_chars

    async def dispatch(self, intent: IntentType, params: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Run the handler for `intent`.

        Never raises: failures come back as a DispatchResult carrying the
        generic apology and a PipelineFailure.
        """
        params = params or {}
        handlers = {
            IntentType.CATEGORIES: self._categories,
            IntentType.STOCK: self._stock,
            IntentType.POLICY: self._policy,
            IntentType.PRODUCT_SEARCH: self._product_search,
        }

        if intent == IntentType.GENERAL:
            return DispatchResult(response_text=GREETING_MESSAGE)
        handler = handlers.get(intent)
        if handler is None:
            return DispatchResult(response_text=CLARIFICATION_MESSAGE)

        try:
            return await handler(params)
        except (MalformedResultError, ToolProviderResponseError) as e:
            logger.error(f"[Dispatch] Malformed result for {intent.value}: {e}")
            return self._apology(e, FailureKind.MALFORMED, intent)
        except ToolProviderError as e:
            logger.error(f"[Dispatch] ToolProvider failure for {intent.value}: {e}")
            return self._apology(e, FailureKind.TRANSIENT_UNAVAILABLE, intent)
        except Exception as e:
            logger.exception(f"[Dispatch] Unexpected error for {intent.value}: {e}")
            return self._apology(e, FailureKind.UNHANDLED, intent)

    @staticmethod
    def _apology(error: Exception, kind: FailureKind, intent: IntentType) -> DispatchResult:
        return DispatchResult(
            response_text=GENERIC_APOLOGY,
            failure=failure_from_exception(error, STAGE, kind, intent=intent.value),
        )

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _categories(self, params: Dict[str, Any]) -> DispatchResult:
        tool_name = "get_categories"
        result = (await self.tool_provider.call_tool(tool_name)).raise_for_error()
        categories = _expect(result.json(), list, tool_name, result.text)

        if not categories:
            text = NO_CATEGORIES_MESSAGE
        else:
            names = ", ".join(str(c) for c in categories)
            text = f"We have {len(categories)} main categories available: {names}."
        return DispatchResult(response_text=text, tool_name=tool_name, tool_result=result.text)

    async def _stock(self, params: Dict[str, Any]) -> DispatchResult:
        product_id = params.get("productId")
        if not product_id:
            logger.info(f"[Dispatch] {FailureKind.USER_INPUT_MISSING.value}: stock request without productId, asking for it")
            return DispatchResult(response_text=MISSING_PRODUCT_ID_MESSAGE)

        tool_name = "query_stock"
        not_found = (
            f"I couldn't find stock information for product ID {product_id}. "
            "Please verify the product ID is correct."
        )
        try:
            result = await self.tool_provider.call_tool(tool_name, {"productId": str(product_id)})
        except ToolProviderError as e:
            logger.warning(f"[Dispatch] Stock lookup failed for {product_id}: {e}")
            return DispatchResult(response_text=not_found, tool_name=tool_name)

        if result.is_error:
            logger.warning(f"[Dispatch] Stock tool error for {product_id}: {result.text}")
            return DispatchResult(response_text=not_found, tool_name=tool_name, tool_result=result.text)

        stock = _expect(result.json(), dict, tool_name, result.text)
        if stock.get("inStock"):
            text = f"Yes, product {product_id} is in stock. We have {stock.get('quantity', 0)} units available."
        else:
            text = f"Sorry, product {product_id} is currently out of stock."
        return DispatchResult(response_text=text, tool_name=tool_name, tool_result=result.text)

    async def _policy(self, params: Dict[str, Any]) -> DispatchResult:
        policy_type = str(params.get("policyType") or "faq").strip().lower()
        if not POLICY_TYPE_PATTERN.match(policy_type):
            logger.warning(f"[Dispatch] Rejected policyType {policy_type!r}, using faq")
            policy_type = "faq"

        uri = FAQ_URI if policy_type == "faq" else POLICY_URI_TEMPLATE.format(policy_type=policy_type)
        tool_name = "read_resource"

        try:
            content = await self.tool_provider.read_resource(uri)
        except ToolProviderError as e:
            logger.warning(f"[Dispatch] Policy read failed for {uri}: {e}")
            content = ""
        if content:
            return DispatchResult(
                response_text=self._summarize(content),
                tool_name=tool_name,
                tool_result=content,
            )

        not_found = (
            f"I'm sorry, I couldn't find information about {policy_type} policy. "
            "Please try rephrasing your question."
        )
        if uri == FAQ_URI:
            return DispatchResult(response_text=not_found, tool_name=tool_name)

        try:
            faq = await self.tool_provider.read_resource(FAQ_URI)
        except ToolProviderError as e:
            logger.warning(f"[Dispatch] FAQ fallback failed: {e}")
            faq = ""
        if not faq:
            return DispatchResult(response_text=not_found, tool_name=tool_name)

        return DispatchResult(
            response_text=FAQ_PREFIX + self._summarize(faq),
            tool_name=tool_name,
            tool_result=faq,
        )

    def _summarize(self, content: str) -> str:
        if len(content) > self.policy_summary_chars:
            return content[: self.policy_summary_chars] + POLICY_MORE_SUFFIX
        return content

    async def _product_search(self, params: Dict[str, Any]) -> DispatchResult:
        tool_name = "query_products"
        search = normalize_search_params(params, self.attribute_mapper, self.default_search_limit)
        logger.info(f"[Dispatch] Searching products with {search}")

        result = (await self.tool_provider.call_tool(tool_name, search)).raise_for_error()
        products = _expect(result.json(), list, tool_name, result.text)

        if not products:
            text = NO_PRODUCTS_MESSAGE
        else:
            if not all(isinstance(p, dict) for p in products):
                raise MalformedResultError(f"Tool '{tool_name}' returned non-object products", raw=result.text)
            text = format_products(products)
        return DispatchResult(response_text=text, tool_name=tool_name, tool_result=result.text)
