"""Per-message orchestration of the ordering workflow.

OrderStateMachine.step() takes one resolved Intent and mutates the session
in place: it decides the next Stage, applies cart changes and returns the
messages to send. When the customer picks a payment method it also returns
a PendingSubmission, which the caller runs outside the session lock and
feeds back through apply_submission().
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Optional, TypeVar

from orderbot.logging_config import get_logger
from orderbot.services import prompts
from orderbot.services.cart import (
    MAX_ITEM_QUANTITY,
    add_line,
    format_amount,
    remove_line,
    total,
)
from orderbot.services.catalog import BranchRegistry, CatalogProvider, MenuItem, paginate
from orderbot.services.errors import (
    CatalogUnavailable,
    GeocodeError,
    InvalidQuantity,
    LineNotFound,
    QuantityExceedsMax,
)
from orderbot.services.geocoding import GeocodingProvider
from orderbot.services.intent_service import CONTROL_INTENTS, Intent, IntentTag
from orderbot.services.outbound import OutboundMessage, QuickReplies, TextMessage
from orderbot.services.session_state import (
    ABSORBING_STAGES,
    BUILDING_STAGES,
    RESTING_STAGES,
    ConversationSession,
    LastOrder,
    Location,
    OrderType,
    PaymentMethod,
    PendingItem,
    PickerContext,
    PickerKind,
    PickerRow,
    SelectedBranch,
    Stage,
)
from orderbot.services.submission import (
    MaterializedOrder,
    RejectionReason,
    SubmissionResult,
    SubmissionStatus,
    new_order_reference,
)
from orderbot.services.tenant import TenantContext

logger = get_logger("order_machine")

T = TypeVar("T")

MSG_CHOOSE_ORDER_TYPE_FIRST = "يرجى اختيار نوع الطلب أولاً."


@dataclass
class PendingSubmission:
    order: MaterializedOrder
    generation: int
    reference: str


@dataclass
class Transition:
    from_stage: Stage
    messages: list[OutboundMessage] = field(default_factory=list)
    submission: Optional[PendingSubmission] = None


def materialize_order(session: ConversationSession, tenant: TenantContext) -> MaterializedOrder:
    return MaterializedOrder(
        reference=session.submission_reference or "",
        tenant_id=session.tenant_id,
        customer_key=session.customer_key,
        order_type=session.order_type,
        payment_method=session.payment_method,
        lines=list(session.cart),
        total=total(session.cart),
        currency=session.cart[0].currency if session.cart else tenant.currency,
        branch=session.branch,
        location=session.location,
    )


class OrderStateMachine:
    def __init__(
        self,
        catalog: CatalogProvider,
        branches: BranchRegistry,
        geocoder: GeocodingProvider,
        max_item_quantity: int = MAX_ITEM_QUANTITY,
        picker_page_size: int = 10,
        idle_reset_minutes: int = 5,
        submission_stale_seconds: int = 120,
        external_timeout_seconds: float = 5.0,
    ):
        self.catalog = catalog
        self.branches = branches
        self.geocoder = geocoder
        self.max_item_quantity = max_item_quantity
        self.picker_page_size = picker_page_size
        self.idle_reset = timedelta(minutes=idle_reset_minutes) if idle_reset_minutes > 0 else None
        self.submission_stale = timedelta(seconds=submission_stale_seconds)
        self.external_timeout_seconds = external_timeout_seconds

        self._handlers = {
            IntentTag.SELECT_ORDER_TYPE: self._select_order_type,
            IntentTag.SHARE_LOCATION: self._share_location,
            IntentTag.SELECT_BRANCH: self._select_branch,
            IntentTag.SELECT_CATEGORY: self._select_category,
            IntentTag.SELECT_ITEM: self._select_item,
            IntentTag.SET_QUANTITY: self._set_quantity,
            IntentTag.VIEW_CART: self._view_cart,
            IntentTag.REMOVE_ITEM: self._remove_item,
            IntentTag.CHECKOUT: self._checkout,
            IntentTag.SELECT_PAYMENT_METHOD: self._select_payment_method,
        }

    # --- entry points -----------------------------------------------------

    async def step(
        self,
        session: ConversationSession,
        tenant: TenantContext,
        intent: Intent,
        now: datetime,
        profile_name: Optional[str] = None,
    ) -> Transition:
        transition = Transition(from_stage=session.stage)
        previous_message_at = session.last_message_at
        session.last_message_at = now

        if self._short_circuit(session, tenant, transition):
            return transition

        self._recover_stale_submission(session, now)

        if self._idle_expired(session, intent, previous_message_at, now):
            logger.info(
                "Idle session reset",
                extra={"context": {"tenant_id": tenant.tenant_id, "customer_key": session.customer_key}},
            )
            session.reset_order()
            session.stage = Stage.AWAITING_ORDER_TYPE
            transition.messages += [TextMessage(prompts.MSG_WELCOME_BACK), prompts.order_type_prompt()]
            return transition

        # a brand-new session is greeted once
        first_contact = not session.flags.first_contact_seen and session.stage == Stage.IDLE
        session.flags.first_contact_seen = True

        if intent.tag in CONTROL_INTENTS:
            transition.messages += self._control(session, tenant, intent)
            if first_contact:
                transition.messages += prompts.welcome_prompt(tenant, profile_name)
            return transition

        if intent.tag == IntentTag.START_ORDER:
            session.reset_order()
            session.stage = Stage.AWAITING_ORDER_TYPE
            transition.messages.append(prompts.order_type_prompt())
            return transition

        if session.stage == Stage.SUBMITTING:
            transition.messages.append(TextMessage(prompts.MSG_SUBMISSION_IN_PROGRESS))
            return transition

        if session.stage in RESTING_STAGES and intent.tag != IntentTag.SELECT_ORDER_TYPE:
            transition.messages += prompts.welcome_prompt(tenant, profile_name if first_contact else None)
            return transition

        stage_before = session.stage
        handler = self._handlers.get(intent.tag)
        messages = await handler(session, tenant, intent, now) if handler else None
        if messages is None:
            messages = self.reprompt(session, tenant)
        transition.messages += messages

        if session.stage == Stage.SUBMITTING and stage_before != Stage.SUBMITTING:
            transition.submission = PendingSubmission(
                order=materialize_order(session, tenant),
                generation=session.generation,
                reference=session.submission_reference,
            )
        return transition

    def apply_submission(
        self,
        session: ConversationSession,
        tenant: TenantContext,
        result: SubmissionResult,
        now: datetime,
    ) -> Transition:
        transition = Transition(from_stage=session.stage)
        session.submitting_since = None

        if result.ok:
            fulfillment = prompts.describe_fulfillment(session)
            session.last_order = LastOrder(
                order_number=result.order_number,
                order_type=session.order_type,
                fulfillment=fulfillment,
                submitted_at=now,
            )
            session.clear_order()
            session.stage = Stage.POST_SUBMISSION
            body = prompts.MSG_ORDER_CONFIRMED.format(order_number=result.order_number) + f"\n{fulfillment}"
            transition.messages.append(QuickReplies(body, [prompts.BTN_TRACK_ORDER, prompts.BTN_NEW_ORDER]))
            return transition

        if result.status == SubmissionStatus.REJECTED:
            reason = result.reason or RejectionReason.UNKNOWN
            session.submission_reference = None
            session.payment_method = None
            session.stage = Stage.CHECKOUT
            if reason == RejectionReason.MIN_ORDER_NOT_MET:
                transition.messages.append(prompts.min_order_message(session, tenant))
            else:
                transition.messages.append(
                    TextMessage(prompts.REJECTION_MESSAGES.get(reason, prompts.REJECTION_MESSAGES[RejectionReason.UNKNOWN]))
                )
            transition.messages.append(prompts.checkout_prompt(session))
            return transition

        # backend error or timeout: keep the payment choice and reference so a retry is idempotent
        session.stage = Stage.AWAITING_PAYMENT
        header = (
            prompts.MSG_SUBMISSION_TIMEOUT
            if result.status == SubmissionStatus.TIMEOUT
            else prompts.MSG_SUBMISSION_RETRY
        )
        transition.messages.append(prompts.payment_prompt(header))
        return transition

    def reprompt(self, session: ConversationSession, tenant: TenantContext) -> list[OutboundMessage]:
        return prompts.prompt_for(session, tenant, self.max_item_quantity)

    # --- pre-routing checks -----------------------------------------------

    def _short_circuit(self, session: ConversationSession, tenant: TenantContext, transition: Transition) -> bool:
        log_context = {"tenant_id": tenant.tenant_id, "customer_key": session.customer_key}

        if not tenant.bot_enabled:
            if session.stage != Stage.DISABLED:
                session.reset_order()
                session.stage = Stage.DISABLED
            logger.info("Bot disabled, message logged only", extra={"context": log_context})
            return True

        if tenant.synthetic_merchant:
            if session.stage != Stage.MANUAL_HANDOFF:
                session.reset_order()
                session.stage = Stage.MANUAL_HANDOFF
            if not session.flags.handoff_greeted:
                session.flags.handoff_greeted = True
                transition.messages.append(TextMessage(prompts.MSG_CONCIERGE.format(name=tenant.name)))
            logger.info("Manual handoff tenant, automation skipped", extra={"context": log_context})
            return True

        if session.stage in ABSORBING_STAGES:
            logger.info("Tenant automation restored", extra={"context": log_context})
            session.clear_order()
            session.stage = Stage.IDLE
            session.flags.handoff_greeted = False
        return False

    def _recover_stale_submission(self, session: ConversationSession, now: datetime) -> None:
        if session.stage != Stage.SUBMITTING or session.submitting_since is None:
            return
        if now - session.submitting_since <= self.submission_stale:
            return
        logger.warning(
            "Stale submission recovered",
            extra={
                "context": {
                    "tenant_id": session.tenant_id,
                    "customer_key": session.customer_key,
                    "reference": session.submission_reference,
                }
            },
        )
        session.stage = Stage.AWAITING_PAYMENT
        session.submitting_since = None

    def _idle_expired(
        self,
        session: ConversationSession,
        intent: Intent,
        previous_message_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        if self.idle_reset is None or previous_message_at is None:
            return False
        if intent.structured or intent.tag in CONTROL_INTENTS or intent.tag == IntentTag.START_ORDER:
            return False
        if session.stage not in BUILDING_STAGES:
            return False
        return now - previous_message_at > self.idle_reset

    def _control(self, session: ConversationSession, tenant: TenantContext, intent: Intent) -> list[OutboundMessage]:
        if intent.tag == IntentTag.TRACK_ORDER:
            if session.last_order is None:
                return [QuickReplies(prompts.MSG_TRACK_NO_ORDER, [prompts.BTN_NEW_ORDER])]
            return [
                TextMessage(
                    prompts.MSG_TRACK_ORDER.format(
                        order_number=session.last_order.order_number,
                        fulfillment=session.last_order.fulfillment,
                    )
                )
            ]
        if intent.tag == IntentTag.SUPPORT:
            if tenant.support_contact:
                return [TextMessage(prompts.MSG_SUPPORT.format(contact=tenant.support_contact))]
            return [TextMessage(prompts.MSG_SUPPORT_NO_CONTACT)]
        if tenant.app_link:
            return [TextMessage(prompts.MSG_APP_LINK.format(link=tenant.app_link))]
        return [TextMessage(prompts.MSG_NO_APP_LINK)]

    # --- collaborator calls -----------------------------------------------

    async def _catalog_call(self, tenant_id: str, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.external_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise CatalogUnavailable(tenant_id, operation, "timeout") from exc

    def _unavailable(self, session: ConversationSession, tenant: TenantContext, exc: Exception) -> list[OutboundMessage]:
        logger.warning(
            "Catalog unavailable",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "customer_key": session.customer_key,
                    "stage": session.stage.value,
                    "error": str(exc),
                }
            },
        )
        return [TextMessage(prompts.MSG_SERVICE_UNAVAILABLE)] + self.reprompt(session, tenant)

    # --- guards -----------------------------------------------------------

    async def _fulfillment_guard(
        self, session: ConversationSession, tenant: TenantContext
    ) -> Optional[list[OutboundMessage]]:
        """Redirect to whatever is still missing before browsing or paying."""
        if session.order_type is None:
            self._leave_order_building(session)
            session.stage = Stage.AWAITING_ORDER_TYPE
            return [TextMessage(MSG_CHOOSE_ORDER_TYPE_FIRST), prompts.order_type_prompt()]
        if session.order_type == OrderType.DELIVERY and session.location is None:
            self._leave_order_building(session)
            session.stage = Stage.AWAITING_LOCATION
            return [prompts.location_prompt()]
        if session.order_type == OrderType.PICKUP and session.branch is None:
            self._leave_order_building(session)
            return await self._show_branches(session, tenant, page=1)
        return None

    @staticmethod
    def _leave_order_building(session: ConversationSession) -> None:
        session.pending_item = None
        session.payment_method = None
        session.last_picker = None

    # --- pickers ----------------------------------------------------------

    async def _show_branches(self, session: ConversationSession, tenant: TenantContext, page: int) -> list[OutboundMessage]:
        try:
            branches = await self._catalog_call(
                tenant.tenant_id, "list_branches", self.branches.list_branches(tenant.tenant_id)
            )
        except CatalogUnavailable as exc:
            if session.stage == Stage.AWAITING_BRANCH:
                return self._unavailable(session, tenant, exc)
            session.order_type = None
            session.stage = Stage.AWAITING_ORDER_TYPE
            return self._unavailable(session, tenant, exc)

        if not branches:
            session.order_type = None
            session.last_picker = None
            session.stage = Stage.AWAITING_ORDER_TYPE
            return [TextMessage(prompts.MSG_NO_BRANCHES), prompts.order_type_prompt()]

        entries, page, total_pages = paginate(branches, page, self.picker_page_size)
        session.last_picker = PickerContext(
            kind=PickerKind.BRANCHES,
            page=page,
            total_pages=total_pages,
            rows=[PickerRow(branch.id, branch.name, branch.address) for branch in entries],
        )
        session.stage = Stage.AWAITING_BRANCH
        return [prompts.picker_message(session.last_picker)]

    async def _show_categories(
        self, session: ConversationSession, tenant: TenantContext, page: int
    ) -> list[OutboundMessage]:
        session.pending_item = None
        session.payment_method = None
        try:
            category_page = await self._catalog_call(
                tenant.tenant_id,
                "list_categories",
                self.catalog.list_categories(tenant.tenant_id, page, self.picker_page_size),
            )
        except CatalogUnavailable as exc:
            session.last_picker = None
            session.stage = Stage.BROWSING_CATEGORIES
            return self._unavailable(session, tenant, exc)

        session.stage = Stage.BROWSING_CATEGORIES
        if not category_page.categories:
            session.last_picker = None
            return [TextMessage(prompts.MSG_NO_CATEGORIES)]

        session.last_picker = PickerContext(
            kind=PickerKind.CATEGORIES,
            page=category_page.page,
            total_pages=category_page.total_pages,
            rows=[PickerRow(category.id, category.name, category.description) for category in category_page.categories],
        )
        return [prompts.picker_message(session.last_picker)]

    async def _show_items(
        self,
        session: ConversationSession,
        tenant: TenantContext,
        category_id: str,
        page: int,
        category_name: Optional[str] = None,
    ) -> list[OutboundMessage]:
        try:
            items = await self._catalog_call(
                tenant.tenant_id, "list_items", self.catalog.list_items(tenant.tenant_id, category_id)
            )
        except CatalogUnavailable as exc:
            return self._unavailable(session, tenant, exc)

        if not items:
            return [TextMessage(prompts.MSG_NO_ITEMS)] + self.reprompt(session, tenant)

        entries, page, total_pages = paginate(items, page, self.picker_page_size)
        session.pending_item = None
        session.payment_method = None
        session.last_picker = PickerContext(
            kind=PickerKind.ITEMS,
            page=page,
            total_pages=total_pages,
            category_id=category_id,
            category_name=category_name,
            rows=[PickerRow(item.id, item.name, _item_description(item)) for item in entries],
        )
        session.stage = Stage.BROWSING_ITEMS
        return [prompts.picker_message(session.last_picker)]

    # --- intent handlers --------------------------------------------------
    # Each returns the messages to send, or None when the intent does not
    # apply to the current stage (the caller then re-prompts).

    async def _select_order_type(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES | RESTING_STAGES:
            return None
        try:
            order_type = OrderType(intent.target_id)
        except ValueError:
            return None

        if session.stage in RESTING_STAGES:
            session.reset_order()
        self._leave_order_building(session)
        session.location = None
        session.branch = None
        session.order_type = order_type

        if order_type == OrderType.DELIVERY:
            session.stage = Stage.AWAITING_LOCATION
            return [prompts.location_prompt()]
        return await self._show_branches(session, tenant, page=1)

    async def _share_location(self, session, tenant, intent, now):
        if session.stage != Stage.AWAITING_LOCATION:
            return None
        if intent.coordinate is None:
            return [prompts.location_prompt()]

        try:
            eligibility = await asyncio.wait_for(
                self.geocoder.reverse_or_validate(tenant, intent.coordinate),
                timeout=self.external_timeout_seconds,
            )
        except (GeocodeError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Location check failed",
                extra={
                    "context": {
                        "tenant_id": tenant.tenant_id,
                        "customer_key": session.customer_key,
                        "error": str(exc) or type(exc).__name__,
                    }
                },
            )
            return [TextMessage(prompts.MSG_GEOCODE_RETRY), prompts.location_prompt()]

        if not eligibility.deliverable:
            session.order_type = None
            session.location = None
            session.stage = Stage.AWAITING_ORDER_TYPE
            return [TextMessage(prompts.MSG_OUT_OF_ZONE), prompts.order_type_prompt()]

        session.location = Location(
            latitude=intent.coordinate.latitude,
            longitude=intent.coordinate.longitude,
            address=eligibility.address,
        )
        if eligibility.branch_id:
            session.branch = SelectedBranch(eligibility.branch_id, eligibility.branch_name or eligibility.branch_id)
        messages = [TextMessage(prompts.MSG_LOCATION_CONFIRMED.format(address=eligibility.address))]
        return messages + await self._show_categories(session, tenant, page=1)

    async def _select_branch(self, session, tenant, intent, now):
        if session.stage != Stage.AWAITING_BRANCH:
            return None
        if intent.page:
            return await self._show_branches(session, tenant, intent.page)
        if not intent.target_id:
            return None

        try:
            branch = await self._catalog_call(
                tenant.tenant_id, "get_branch", self.branches.get_branch(tenant.tenant_id, intent.target_id)
            )
        except CatalogUnavailable as exc:
            return self._unavailable(session, tenant, exc)
        if branch is None:
            return [TextMessage(prompts.MSG_BRANCH_NOT_FOUND)] + self.reprompt(session, tenant)

        session.branch = SelectedBranch(branch.id, branch.name, branch.address)
        messages = [TextMessage(prompts.MSG_BRANCH_CONFIRMED.format(branch=branch.name))]
        return messages + await self._show_categories(session, tenant, page=1)

    async def _select_category(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES:
            return None
        redirect = await self._fulfillment_guard(session, tenant)
        if redirect is not None:
            return redirect

        if intent.target_id is None:
            return await self._show_categories(session, tenant, intent.page or 1)
        return await self._show_items(
            session, tenant, intent.target_id, page=1, category_name=_picker_title(session, intent.target_id)
        )

    async def _select_item(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES:
            return None
        redirect = await self._fulfillment_guard(session, tenant)
        if redirect is not None:
            return redirect

        picker = session.last_picker
        if intent.page:
            if picker is None or picker.kind != PickerKind.ITEMS or picker.category_id is None:
                return None
            return await self._show_items(session, tenant, picker.category_id, intent.page, picker.category_name)
        if not intent.target_id:
            return None

        try:
            item = await self._find_item(session, tenant, intent.target_id)
        except CatalogUnavailable as exc:
            return self._unavailable(session, tenant, exc)
        if item is None:
            return [TextMessage(prompts.MSG_SELECT_ITEM_FIRST)] + self.reprompt(session, tenant)

        session.payment_method = None
        session.pending_item = PendingItem(
            item_id=item.id,
            name=item.name,
            unit_price=item.price,
            currency=item.currency,
            category_id=item.category_id,
            image_url=item.image_url,
        )
        session.stage = Stage.AWAITING_QUANTITY
        return prompts.quantity_prompt(session.pending_item, self.max_item_quantity)

    async def _find_item(self, session: ConversationSession, tenant: TenantContext, item_id: str) -> Optional[MenuItem]:
        picker = session.last_picker
        if picker is not None and picker.kind == PickerKind.ITEMS and picker.category_id:
            items = await self._catalog_call(
                tenant.tenant_id, "list_items", self.catalog.list_items(tenant.tenant_id, picker.category_id)
            )
            for item in items:
                if item.id == item_id:
                    return item
        return await self._catalog_call(tenant.tenant_id, "get_item", self.catalog.get_item(tenant.tenant_id, item_id))

    async def _set_quantity(self, session, tenant, intent, now):
        pending = session.pending_item
        if session.stage != Stage.AWAITING_QUANTITY or pending is None:
            return None
        if intent.quantity is None:
            return [TextMessage(prompts.MSG_QUANTITY_CUSTOM.format(max=self.max_item_quantity))]

        item = MenuItem(
            id=pending.item_id,
            name=pending.name,
            price=pending.unit_price,
            category_id=pending.category_id or "",
            currency=pending.currency,
        )
        try:
            session.cart = add_line(session.cart, item, intent.quantity, self.max_item_quantity)
        except InvalidQuantity:
            return [TextMessage(prompts.MSG_INVALID_QUANTITY.format(max=self.max_item_quantity))]
        except QuantityExceedsMax as exc:
            return [
                TextMessage(
                    prompts.MSG_QUANTITY_EXCEEDS.format(
                        max=exc.max_quantity,
                        existing=exc.existing,
                        item=pending.name,
                        remaining=exc.remaining,
                    )
                )
            ]

        session.pending_item = None
        session.stage = Stage.CART_REVIEW
        header = prompts.MSG_ITEM_ADDED.format(quantity=intent.quantity, item=pending.name)
        return [prompts.cart_actions(session, header=header)]

    async def _view_cart(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES:
            return None
        if not session.cart:
            return [QuickReplies(prompts.MSG_CART_EMPTY, [prompts.BTN_ADD_ITEM])]

        session.pending_item = None
        session.payment_method = None
        if session.last_picker is not None and session.last_picker.kind == PickerKind.REMOVE_ITEM:
            session.last_picker = None
        session.stage = Stage.CART_REVIEW
        return [prompts.cart_review(session)]

    async def _remove_item(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES:
            return None
        if not session.cart:
            return [QuickReplies(prompts.MSG_CART_EMPTY, [prompts.BTN_ADD_ITEM])]

        if intent.target_id is None:
            entries, _page, _total = paginate(session.cart, 1, self.picker_page_size)
            session.pending_item = None
            session.payment_method = None
            session.last_picker = PickerContext(
                kind=PickerKind.REMOVE_ITEM,
                rows=[PickerRow(line.item_id, line.name, f"x{line.quantity}") for line in entries],
            )
            session.stage = Stage.CART_REVIEW
            return [prompts.picker_message(session.last_picker)]

        removed = next((line for line in session.cart if line.item_id == intent.target_id), None)
        try:
            session.cart = remove_line(session.cart, item_id=intent.target_id)
        except LineNotFound:
            logger.info(
                "Remove requested for line not in cart",
                extra={"context": {"tenant_id": tenant.tenant_id, "customer_key": session.customer_key}},
            )
            return None

        session.pending_item = None
        session.payment_method = None
        session.last_picker = None
        messages: list[OutboundMessage] = [TextMessage(prompts.MSG_ITEM_REMOVED.format(item=removed.name))]
        if not session.cart:
            messages.append(TextMessage(prompts.MSG_CART_EMPTY))
            return messages + await self._show_categories(session, tenant, page=1)
        session.stage = Stage.CART_REVIEW
        return messages + [prompts.cart_review(session)]

    async def _checkout(self, session, tenant, intent, now):
        if session.stage not in BUILDING_STAGES:
            return None
        if not session.cart:
            return [QuickReplies(prompts.MSG_CART_EMPTY, [prompts.BTN_ADD_ITEM])]

        redirect = await self._fulfillment_guard(session, tenant)
        if redirect is not None:
            return redirect

        session.pending_item = None
        session.payment_method = None
        session.last_picker = None
        if total(session.cart) < tenant.min_order_total:
            session.stage = Stage.CART_REVIEW
            return [prompts.min_order_message(session, tenant), prompts.cart_review(session)]

        session.stage = Stage.CHECKOUT
        return [prompts.checkout_prompt(session)]

    async def _select_payment_method(self, session, tenant, intent, now):
        if session.stage not in (Stage.CHECKOUT, Stage.AWAITING_PAYMENT):
            return None
        try:
            method = PaymentMethod(intent.target_id)
        except ValueError:
            return None

        redirect = await self._fulfillment_guard(session, tenant)
        if redirect is not None:
            return redirect

        retrying = (
            session.stage == Stage.AWAITING_PAYMENT
            and session.submission_reference is not None
            and session.payment_method == method
        )
        if not retrying:
            session.submission_reference = new_order_reference(now)
        session.payment_method = method
        session.submitting_since = now
        session.stage = Stage.SUBMITTING
        logger.info(
            "Order submission scheduled",
            extra={
                "context": {
                    "tenant_id": tenant.tenant_id,
                    "customer_key": session.customer_key,
                    "reference": session.submission_reference,
                    "payment_method": method.value,
                    "total": format_amount(total(session.cart)),
                    "retry": retrying,
                }
            },
        )
        return [TextMessage(prompts.MSG_SUBMITTING)]


def _item_description(item: MenuItem) -> str:
    price = f"{format_amount(item.price)} {item.currency}"
    return f"{item.description} • {price}" if item.description else price


def _picker_title(session: ConversationSession, entity_id: str) -> Optional[str]:
    picker = session.last_picker
    if picker is None:
        return None
    return next((row.title for row in picker.rows if row.id == entity_id), None)
