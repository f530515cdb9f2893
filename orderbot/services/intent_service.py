import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from orderbot.logging_config import get_logger
from orderbot.services import prompts
from orderbot.services.catalog import CatalogProvider, CatalogScope, ScopeKind
from orderbot.services.errors import CatalogUnavailable
from orderbot.services.matching import best_match, contains_phrase, normalize_for_matching
from orderbot.services.session_state import ConversationSession, Coordinate, PickerKind, Stage
from orderbot.services.tenant import TenantContext

logger = get_logger("intent_service")

_CONTROL_PHRASES_PATH = Path(__file__).resolve().parents[1] / "knowledge" / "control_phrases.yaml"
_MAX_CONTAINMENT_WORDS = 6

_ARABIC_INDIC_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹", "01234567890123456789")
_NUMBER_PATTERN = re.compile(r"^\d{1,4}$")
_COORDINATE_PATTERN = re.compile(r"(-?\d+(?:\.\d+)?)[^\d-]+(-?\d+(?:\.\d+)?)")


class IntentTag(str, Enum):
    START_ORDER = "start_order"
    SELECT_ORDER_TYPE = "select_order_type"
    SHARE_LOCATION = "share_location"
    SELECT_BRANCH = "select_branch"
    SELECT_CATEGORY = "select_category"
    SELECT_ITEM = "select_item"
    SET_QUANTITY = "set_quantity"
    VIEW_CART = "view_cart"
    REMOVE_ITEM = "remove_item"
    CHECKOUT = "checkout"
    SELECT_PAYMENT_METHOD = "select_payment_method"
    TRACK_ORDER = "track_order"
    SUPPORT = "support"
    APP_LINK = "app_link"
    UNRECOGNIZED = "unrecognized"


# Answered from any stage without moving it.
CONTROL_INTENTS = {IntentTag.TRACK_ORDER, IntentTag.SUPPORT, IntentTag.APP_LINK}


@dataclass(frozen=True)
class Intent:
    tag: IntentTag
    target_id: Optional[str] = None
    text: Optional[str] = None
    quantity: Optional[int] = None
    coordinate: Optional[Coordinate] = None
    page: Optional[int] = None
    structured: bool = False


@dataclass(frozen=True)
class InboundMessage:
    body: str = ""
    reply_id: Optional[str] = None
    location: Optional[Coordinate] = None
    profile_name: Optional[str] = None


_EXACT_REPLY_IDS = {
    prompts.NEW_ORDER: (IntentTag.START_ORDER, None),
    prompts.TRACK_ORDER: (IntentTag.TRACK_ORDER, None),
    prompts.CONTACT_SUPPORT: (IntentTag.SUPPORT, None),
    prompts.OPEN_APP: (IntentTag.APP_LINK, None),
    prompts.ORDER_DELIVERY: (IntentTag.SELECT_ORDER_TYPE, "delivery"),
    prompts.ORDER_PICKUP: (IntentTag.SELECT_ORDER_TYPE, "pickup"),
    prompts.SEND_LOCATION: (IntentTag.SHARE_LOCATION, None),
    prompts.BROWSE_MENU: (IntentTag.SELECT_CATEGORY, None),
    prompts.ADD_ITEM: (IntentTag.SELECT_CATEGORY, None),
    prompts.VIEW_CART: (IntentTag.VIEW_CART, None),
    prompts.REMOVE_ITEM: (IntentTag.REMOVE_ITEM, None),
    prompts.CHECKOUT: (IntentTag.CHECKOUT, None),
    prompts.PAY_CASH: (IntentTag.SELECT_PAYMENT_METHOD, "cash"),
    prompts.PAY_ONLINE: (IntentTag.SELECT_PAYMENT_METHOD, "online"),
    prompts.QTY_CUSTOM: (IntentTag.SET_QUANTITY, None),
}

_PAGE_TAGS = {
    PickerKind.BRANCHES.value: IntentTag.SELECT_BRANCH,
    PickerKind.CATEGORIES.value: IntentTag.SELECT_CATEGORY,
    PickerKind.ITEMS.value: IntentTag.SELECT_ITEM,
}

_PREFIXED_REPLY_IDS = (
    (prompts.REMOVE_ITEM_PREFIX, IntentTag.REMOVE_ITEM),
    (prompts.CATEGORY_PREFIX, IntentTag.SELECT_CATEGORY),
    (prompts.ITEM_PREFIX, IntentTag.SELECT_ITEM),
    (prompts.BRANCH_PREFIX, IntentTag.SELECT_BRANCH),
)

_PICKER_TAGS = {
    PickerKind.BRANCHES: IntentTag.SELECT_BRANCH,
    PickerKind.CATEGORIES: IntentTag.SELECT_CATEGORY,
    PickerKind.ITEMS: IntentTag.SELECT_ITEM,
    PickerKind.REMOVE_ITEM: IntentTag.REMOVE_ITEM,
}

_PICKER_STAGES = {
    PickerKind.BRANCHES: Stage.AWAITING_BRANCH,
    PickerKind.CATEGORIES: Stage.BROWSING_CATEGORIES,
    PickerKind.ITEMS: Stage.BROWSING_ITEMS,
    PickerKind.REMOVE_ITEM: Stage.CART_REVIEW,
}


def parse_number(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    value = text.strip().translate(_ARABIC_INDIC_DIGITS)
    if not _NUMBER_PATTERN.match(value):
        return None
    return int(value)


def parse_coordinate(text: Optional[str]) -> Optional[Coordinate]:
    """Read "lat, lon" (or a maps link containing them) from free text."""
    if not text:
        return None
    match = _COORDINATE_PATTERN.search(text.translate(_ARABIC_INDIC_DIGITS))
    if not match:
        return None
    coordinate = Coordinate(float(match.group(1)), float(match.group(2)))
    return coordinate if coordinate.is_valid() else None


def parse_reply_id(reply_id: Optional[str]) -> Optional[Intent]:
    """Map a structured-reply identifier to its intent. Unknown ids give None."""
    if not reply_id:
        return None
    reply_id = reply_id.strip()

    exact = _EXACT_REPLY_IDS.get(reply_id)
    if exact is not None:
        tag, target = exact
        return Intent(tag=tag, target_id=target, structured=True)

    if reply_id.startswith(prompts.PAGE_PREFIX):
        kind, _, page = reply_id[len(prompts.PAGE_PREFIX):].rpartition("_")
        if kind in _PAGE_TAGS and page.isdigit():
            return Intent(tag=_PAGE_TAGS[kind], page=int(page), structured=True)
        return None

    if reply_id.startswith(prompts.QUANTITY_PREFIX):
        quantity = parse_number(reply_id[len(prompts.QUANTITY_PREFIX):])
        if quantity is None:
            return None
        return Intent(tag=IntentTag.SET_QUANTITY, quantity=quantity, structured=True)

    for prefix, tag in _PREFIXED_REPLY_IDS:
        if reply_id.startswith(prefix) and len(reply_id) > len(prefix):
            return Intent(tag=tag, target_id=reply_id[len(prefix):], structured=True)
    return None


@dataclass(frozen=True)
class ControlPhrase:
    tag: IntentTag
    target: Optional[str]
    phrase: str


@lru_cache(maxsize=4)
def _load_yaml(path: str) -> dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


@lru_cache(maxsize=4)
def load_control_phrases(path: str = str(_CONTROL_PHRASES_PATH)) -> tuple[ControlPhrase, ...]:
    entries = []
    for tag_name, config in _load_yaml(path).items():
        tag = IntentTag(tag_name)
        config = config or {}
        for phrase in config.get("phrases") or []:
            entries.append(ControlPhrase(tag, None, normalize_for_matching(phrase)))
        for target, phrases in (config.get("targets") or {}).items():
            for phrase in phrases or []:
                entries.append(ControlPhrase(tag, target, normalize_for_matching(phrase)))
    return tuple(entry for entry in entries if entry.phrase)


def match_control_phrase(text: str, phrases: tuple[ControlPhrase, ...]) -> Optional[ControlPhrase]:
    """Exact phrase, then longest whole-phrase containment, then fuzzy."""
    normalized = normalize_for_matching(text)
    if not normalized:
        return None

    for entry in phrases:
        if entry.phrase == normalized:
            return entry

    if len(normalized.split()) <= _MAX_CONTAINMENT_WORDS:
        contained = [entry for entry in phrases if contains_phrase(normalized, entry.phrase)]
        if contained:
            return max(contained, key=lambda entry: len(entry.phrase))

    match_index = best_match(normalized, {str(index): entry.phrase for index, entry in enumerate(phrases)})
    if match_index is None:
        return None
    return phrases[int(match_index)]


class IntentResolver:
    """Classifies one inbound message against the session and the tenant catalog."""

    def __init__(
        self,
        catalog: CatalogProvider,
        phrases_path: Optional[str] = None,
        catalog_timeout_seconds: float = 5.0,
    ):
        self.catalog = catalog
        self.phrases = load_control_phrases(phrases_path or str(_CONTROL_PHRASES_PATH))
        self.catalog_timeout_seconds = catalog_timeout_seconds

    async def resolve(
        self, session: ConversationSession, tenant: TenantContext, message: InboundMessage
    ) -> Intent:
        start_time = time.time()
        intent = await self._resolve(session, tenant, message)
        logger.debug(
            "Intent resolved",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "customer_key": session.customer_key,
                    "stage": session.stage.value,
                    "intent": intent.tag.value,
                    "structured": intent.structured,
                    "elapsed_ms": int((time.time() - start_time) * 1000),
                }
            },
        )
        return intent

    async def _resolve(
        self, session: ConversationSession, tenant: TenantContext, message: InboundMessage
    ) -> Intent:
        if message.location is not None:
            return Intent(tag=IntentTag.SHARE_LOCATION, coordinate=message.location, structured=True)

        structured = parse_reply_id(message.reply_id) or parse_reply_id(message.body)
        if structured is not None:
            return structured

        text = (message.body or "").strip()
        if not text:
            return Intent(tag=IntentTag.UNRECOGNIZED, text=text)

        control = match_control_phrase(text, self.phrases)
        if control is not None:
            return Intent(tag=control.tag, target_id=control.target, text=text)

        scoped = await self._match_scope(session, tenant, text)
        if scoped is not None:
            return scoped

        if session.stage == Stage.AWAITING_QUANTITY:
            quantity = parse_number(text)
            if quantity is not None:
                return Intent(tag=IntentTag.SET_QUANTITY, quantity=quantity, text=text)

        return Intent(tag=IntentTag.UNRECOGNIZED, text=text)

    async def _match_scope(
        self, session: ConversationSession, tenant: TenantContext, text: str
    ) -> Optional[Intent]:
        if session.stage == Stage.AWAITING_LOCATION:
            coordinate = parse_coordinate(text)
            if coordinate is not None:
                return Intent(tag=IntentTag.SHARE_LOCATION, coordinate=coordinate, text=text)
            return None

        picker = session.last_picker
        if picker is None or _PICKER_STAGES.get(picker.kind) != session.stage:
            return None
        tag = _PICKER_TAGS[picker.kind]

        number = parse_number(text)
        if number is not None:
            if 1 <= number <= len(picker.rows):
                return Intent(tag=tag, target_id=picker.rows[number - 1].id, text=text)
            return None

        if picker.kind in (PickerKind.BRANCHES, PickerKind.REMOVE_ITEM):
            row_id = best_match(text, {row.id: row.title for row in picker.rows})
            return Intent(tag=tag, target_id=row_id, text=text) if row_id else None

        if picker.kind == PickerKind.CATEGORIES:
            scope = CatalogScope(ScopeKind.CATEGORIES)
        else:
            scope = CatalogScope(ScopeKind.ITEMS, category_id=picker.category_id)

        try:
            entity = await asyncio.wait_for(
                self.catalog.find_by_fuzzy_name(tenant.tenant_id, scope, text),
                timeout=self.catalog_timeout_seconds,
            )
        except (CatalogUnavailable, asyncio.TimeoutError) as exc:
            logger.warning(
                "Catalog match skipped",
                extra={
                    "context": {
                        "tenant_id": tenant.tenant_id,
                        "customer_key": session.customer_key,
                        "scope": scope.kind.value,
                        "error": str(exc) or type(exc).__name__,
                    }
                },
            )
            return None
        if entity is None:
            return None
        return Intent(tag=tag, target_id=entity.id, text=text)
