import asyncio
from unittest.mock import AsyncMock

import pytest

from orderbot.services.errors import CatalogUnavailable
from orderbot.services.intent_service import (
    InboundMessage,
    IntentResolver,
    IntentTag,
    load_control_phrases,
    match_control_phrase,
    parse_coordinate,
    parse_number,
    parse_reply_id,
)
from orderbot.services.session_state import (
    ConversationSession,
    Coordinate,
    PickerContext,
    PickerKind,
    PickerRow,
    Stage,
)


def _session(stage: Stage, picker: PickerContext | None = None) -> ConversationSession:
    return ConversationSession(tenant_id="t1", customer_key="966500000001", stage=stage, last_picker=picker)


def _resolve(resolver, session, tenant, **message):
    return asyncio.run(resolver.resolve(session, tenant, InboundMessage(**message)))


class TestParseReplyId:
    def test_exact_ids(self):
        assert parse_reply_id("new_order").tag == IntentTag.START_ORDER
        assert parse_reply_id("view_cart").tag == IntentTag.VIEW_CART
        assert parse_reply_id("remove_item").target_id is None

    def test_order_type_targets(self):
        intent = parse_reply_id("order_delivery")
        assert intent.tag == IntentTag.SELECT_ORDER_TYPE
        assert intent.target_id == "delivery"

    def test_payment_targets(self):
        assert parse_reply_id("pay_online").target_id == "online"

    def test_prefixed_ids(self):
        assert parse_reply_id("cat_drinks").tag == IntentTag.SELECT_CATEGORY
        assert parse_reply_id("item_cola").target_id == "cola"
        assert parse_reply_id("branch_B1").target_id == "B1"

    def test_remove_item_prefix_wins_over_bare_id(self):
        intent = parse_reply_id("remove_item_cola")
        assert intent.tag == IntentTag.REMOVE_ITEM
        assert intent.target_id == "cola"

    def test_quantity(self):
        intent = parse_reply_id("qty_2")
        assert intent.tag == IntentTag.SET_QUANTITY
        assert intent.quantity == 2

    def test_custom_quantity_asks_for_number(self):
        intent = parse_reply_id("qty_custom")
        assert intent.tag == IntentTag.SET_QUANTITY
        assert intent.quantity is None

    def test_page(self):
        intent = parse_reply_id("page_categories_2")
        assert intent.tag == IntentTag.SELECT_CATEGORY
        assert intent.page == 2

    def test_structured_flag(self):
        assert parse_reply_id("checkout").structured is True

    @pytest.mark.parametrize("reply_id", [None, "", "hello", "cat_", "page_unknown_2"])
    def test_unknown(self, reply_id):
        assert parse_reply_id(reply_id) is None


class TestParsers:
    def test_parse_number(self):
        assert parse_number(" 3 ") == 3
        assert parse_number("٣") == 3
        assert parse_number("three") is None
        assert parse_number("12345") is None

    def test_parse_coordinate(self):
        assert parse_coordinate("24.7136, 46.6753") == Coordinate(24.7136, 46.6753)

    def test_parse_coordinate_from_maps_link(self):
        assert parse_coordinate("https://maps.google.com/?q=24.7136,46.6753") == Coordinate(24.7136, 46.6753)

    def test_parse_coordinate_out_of_range(self):
        assert parse_coordinate("124.7, 46.6") is None


class TestControlPhrases:
    def setup_method(self):
        self.phrases = load_control_phrases()

    def test_exact_phrase(self):
        match = match_control_phrase("Track order", self.phrases)
        assert match.tag == IntentTag.TRACK_ORDER

    def test_arabic_phrase(self):
        assert match_control_phrase("طلب جديد", self.phrases).tag == IntentTag.START_ORDER

    def test_containment_prefers_longest_phrase(self):
        match = match_control_phrase("I want to pay online please", self.phrases)
        assert match.tag == IntentTag.SELECT_PAYMENT_METHOD
        assert match.target == "online"

    def test_order_type_target(self):
        match = match_control_phrase("pickup", self.phrases)
        assert match.tag == IntentTag.SELECT_ORDER_TYPE
        assert match.target == "pickup"

    def test_unrelated_text(self):
        assert match_control_phrase("Cola", self.phrases) is None


class TestResolverPrecedence:
    def test_location_payload_first(self, resolver, tenant):
        intent = _resolve(
            resolver,
            _session(Stage.AWAITING_LOCATION),
            tenant,
            body="checkout",
            location=Coordinate(24.7, 46.6),
        )
        assert intent.tag == IntentTag.SHARE_LOCATION
        assert intent.coordinate == Coordinate(24.7, 46.6)

    def test_reply_id_beats_text(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.CART_REVIEW), tenant, body="track order", reply_id="checkout")
        assert intent.tag == IntentTag.CHECKOUT
        assert intent.structured is True

    def test_body_carrying_reply_id(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.AWAITING_ORDER_TYPE), tenant, body="order_pickup")
        assert intent.tag == IntentTag.SELECT_ORDER_TYPE
        assert intent.target_id == "pickup"

    def test_control_phrase_from_any_stage(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.AWAITING_QUANTITY), tenant, body="support")
        assert intent.tag == IntentTag.SUPPORT

    def test_empty_message(self, resolver, tenant):
        assert _resolve(resolver, _session(Stage.IDLE), tenant, body="  ").tag == IntentTag.UNRECOGNIZED

    def test_unrecognized(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.IDLE), tenant, body="qwerty zxcv")
        assert intent.tag == IntentTag.UNRECOGNIZED
        assert intent.text == "qwerty zxcv"


class TestResolverScope:
    def _items_picker(self):
        return PickerContext(
            kind=PickerKind.ITEMS,
            category_id="drinks",
            category_name="Drinks",
            rows=[PickerRow("cola", "Cola"), PickerRow("water", "Water"), PickerRow("lemonade", "Mint Lemonade")],
        )

    def test_category_name(self, resolver, tenant):
        picker = PickerContext(kind=PickerKind.CATEGORIES, rows=[PickerRow("drinks", "Drinks"), PickerRow("main", "Main Dishes")])
        intent = _resolve(resolver, _session(Stage.BROWSING_CATEGORIES, picker), tenant, body="drinks")
        assert intent.tag == IntentTag.SELECT_CATEGORY
        assert intent.target_id == "drinks"

    def test_item_fuzzy_name(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="mint lemonad")
        assert intent.tag == IntentTag.SELECT_ITEM
        assert intent.target_id == "lemonade"

    def test_item_outside_scope_is_not_matched(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="Beef Burger")
        assert intent.tag == IntentTag.UNRECOGNIZED

    def test_category_name_not_matched_while_browsing_items(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="Main Dishes")
        assert intent.tag == IntentTag.UNRECOGNIZED

    def test_numeric_row_index(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="2")
        assert intent.tag == IntentTag.SELECT_ITEM
        assert intent.target_id == "water"

    def test_numeric_index_out_of_range(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="9")
        assert intent.tag == IntentTag.UNRECOGNIZED

    def test_picker_from_another_stage_is_ignored(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.CART_REVIEW, self._items_picker()), tenant, body="Cola")
        assert intent.tag == IntentTag.UNRECOGNIZED

    def test_branch_title(self, resolver, tenant):
        picker = PickerContext(
            kind=PickerKind.BRANCHES,
            rows=[PickerRow("B1", "Olaya Branch"), PickerRow("B2", "Tuwaiq Branch")],
        )
        intent = _resolve(resolver, _session(Stage.AWAITING_BRANCH, picker), tenant, body="tuwaiq branch")
        assert intent.tag == IntentTag.SELECT_BRANCH
        assert intent.target_id == "B2"

    def test_quantity_number(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.AWAITING_QUANTITY, self._items_picker()), tenant, body="3")
        assert intent.tag == IntentTag.SET_QUANTITY
        assert intent.quantity == 3

    def test_coordinates_as_text(self, resolver, tenant):
        intent = _resolve(resolver, _session(Stage.AWAITING_LOCATION), tenant, body="24.7136, 46.6753")
        assert intent.tag == IntentTag.SHARE_LOCATION
        assert intent.structured is False

    def test_catalog_failure_degrades_to_unrecognized(self, tenant):
        catalog = AsyncMock()
        catalog.find_by_fuzzy_name.side_effect = CatalogUnavailable("t1", "list_items", "timeout")
        resolver = IntentResolver(catalog)
        intent = _resolve(resolver, _session(Stage.BROWSING_ITEMS, self._items_picker()), tenant, body="Cola")
        assert intent.tag == IntentTag.UNRECOGNIZED
