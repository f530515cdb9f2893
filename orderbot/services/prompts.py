"""Customer-facing texts and the prompt shown for each stage.

Every prompt is rebuilt from session fields alone, so a re-prompt never
needs the conversation history or a catalog round-trip.
"""

from typing import Optional

from orderbot.services.cart import MAX_ITEM_QUANTITY, format_amount, format_cart, total
from orderbot.services.outbound import (
    ListPicker,
    ListRow,
    MediaAttachment,
    OutboundMessage,
    QuickReplies,
    QuickReply,
    TextMessage,
)
from orderbot.services.session_state import (
    ConversationSession,
    OrderType,
    PendingItem,
    PickerContext,
    PickerKind,
    Stage,
)
from orderbot.services.submission import RejectionReason
from orderbot.services.tenant import TenantContext

# Reply ids carried back by structured replies
NEW_ORDER = "new_order"
TRACK_ORDER = "track_order"
CONTACT_SUPPORT = "contact_support"
OPEN_APP = "open_app"
ORDER_DELIVERY = "order_delivery"
ORDER_PICKUP = "order_pickup"
SEND_LOCATION = "send_location"
BROWSE_MENU = "browse_menu"
ADD_ITEM = "add_item"
VIEW_CART = "view_cart"
REMOVE_ITEM = "remove_item"
CHECKOUT = "checkout"
PAY_CASH = "pay_cash"
PAY_ONLINE = "pay_online"
QTY_CUSTOM = "qty_custom"

CATEGORY_PREFIX = "cat_"
ITEM_PREFIX = "item_"
BRANCH_PREFIX = "branch_"
QUANTITY_PREFIX = "qty_"
REMOVE_ITEM_PREFIX = "remove_item_"
PAGE_PREFIX = "page_"

ROW_PREFIXES = {
    PickerKind.BRANCHES: BRANCH_PREFIX,
    PickerKind.CATEGORIES: CATEGORY_PREFIX,
    PickerKind.ITEMS: ITEM_PREFIX,
    PickerKind.REMOVE_ITEM: REMOVE_ITEM_PREFIX,
}

MSG_WELCOME = "أهلاً بك في {name}! 👋 كيف يمكننا خدمتك اليوم؟"
MSG_WELCOME_NAMED = "أهلاً {customer}! مرحباً بك في {name} 👋 كيف يمكننا خدمتك اليوم؟"
MSG_WELCOME_BACK = "مرحباً بعودتك! 👋 لنبدأ طلباً جديداً."
MSG_ORDER_TYPE = "اختر نوع الطلب:"
MSG_LOCATION_PROMPT = (
    "📍 لمشاركة موقعك: اضغط على رمز المشبك 📎 ثم اختر (الموقع) وأرسله.\n"
    "أو اكتب الإحداثيات مثل: 24.7136, 46.6753"
)
MSG_GEOCODE_RETRY = "تعذر قراءة الموقع. فضلاً أعد مشاركة موقعك مرة أخرى."
MSG_OUT_OF_ZONE = (
    "أهلاً وسهلاً 👋 حالياً عنوانك خارج نطاق التوصيل المعتمد للمطعم، نعتذر منك. "
    "بإمكانك الطلب للاستلام من المطعم، ونسعد بخدمتك دائماً."
)
MSG_LOCATION_CONFIRMED = "✅ تم تأكيد موقع التوصيل: {address}"
MSG_BRANCH_CONFIRMED = "✅ تم اختيار {branch}"
MSG_BRANCH_LIST = "اختر الفرع الأقرب لك:"
MSG_NO_BRANCHES = "⚠️ لا تتوفر فروع للاستلام حالياً."
MSG_BRANCH_NOT_FOUND = "تعذر العثور على هذا الفرع. يرجى اختيار فرع من القائمة."
MSG_SERVICE_UNAVAILABLE = "⚠️ الخدمة غير متاحة مؤقتاً، يرجى المحاولة لاحقاً."
MSG_CATEGORY_LIST = "تصفح قائمتنا:"
MSG_NO_CATEGORIES = "⚠️ لا توجد فئات متاحة في القائمة حالياً."
MSG_ITEM_LIST = "اختر طبقاً من {category}:"
MSG_NO_ITEMS = "⚠️ لا توجد أصناف متاحة ضمن هذه الفئة حالياً."
MSG_SELECT_ITEM_FIRST = "فضلاً اختر طبقاً من القائمة أولاً."
MSG_QUANTITY_PROMPT = "كم الكمية التي ترغب بها من {item}؟ (من 1 إلى {max})"
MSG_QUANTITY_CUSTOM = "اكتب الكمية المطلوبة كرقم من 1 إلى {max}."
MSG_INVALID_QUANTITY = "⚠️ الكمية يجب أن تكون رقماً من 1 إلى {max}."
MSG_QUANTITY_EXCEEDS = (
    "⚠️ الحد الأقصى لكل صنف هو {max}. لديك {existing} من {item} في السلة، "
    "يمكنك إضافة {remaining} فقط."
)
MSG_ITEM_ADDED = "✅ تمت إضافة {quantity} × {item} إلى السلة."
MSG_POST_ITEM = "هل ترغب في إضافة صنف آخر أم المتابعة للدفع؟"
MSG_CART_HEADER = "🛒 سلتك:"
MSG_CART_EMPTY = "السلة فارغة حالياً."
MSG_REMOVE_PROMPT = "اختر الصنف الذي ترغب في حذفه من السلة:"
MSG_ITEM_REMOVED = "🗑️ تم حذف {item} من السلة."
MSG_ORDER_SUMMARY = "🧾 ملخص الطلب:"
MSG_PAYMENT_PROMPT = "اختر وسيلة الدفع:"
MSG_SUBMITTING = "⏳ جاري إرسال طلبك..."
MSG_SUBMISSION_IN_PROGRESS = "⏳ طلبك قيد الإرسال، يرجى الانتظار قليلاً."
MSG_ORDER_CONFIRMED = "🎉 تم استلام طلبك بنجاح! رقم الطلب: {order_number}"
MSG_SUBMISSION_RETRY = "⚠️ حدث خطأ أثناء إرسال الطلب. سلتك محفوظة، يمكنك المحاولة مرة أخرى."
MSG_SUBMISSION_TIMEOUT = "⚠️ لم يصلنا رد من المطعم في الوقت المحدد. سلتك محفوظة، يمكنك المحاولة مرة أخرى."
MSG_MIN_ORDER = "⚠️ الحد الأدنى للطلب هو {min} {currency}. أضف أصنافاً أخرى للمتابعة."
MSG_TRACK_NO_ORDER = 'لا يوجد طلب حديث لتتبعه. اكتب "طلب جديد" للبدء.'
MSG_TRACK_ORDER = "📦 طلبك رقم {order_number}\n🕒 طلبك قيد المراجعة.\n{fulfillment}"
MSG_SUPPORT = "📞 للتواصل مع فريق الدعم: {contact}"
MSG_SUPPORT_NO_CONTACT = "📞 سيتواصل معك فريق الدعم قريباً."
MSG_APP_LINK = "📱 حمّل تطبيقنا واطلب بسهولة: {link}"
MSG_NO_APP_LINK = "التطبيق غير متاح حالياً، يمكنك الطلب من هنا مباشرة."
MSG_CONCIERGE = "أهلاً بك في {name}! 👋 سيتواصل معك أحد موظفينا لاستلام طلبك."
MSG_MORE = "المزيد ▶️"
MSG_PAGE_SUFFIX = " (صفحة {page} من {total})"

REJECTION_MESSAGES = {
    RejectionReason.NO_BRANCH_SELECTED: "⚠️ يرجى اختيار الفرع قبل تأكيد الطلب.",
    RejectionReason.MISSING_LOCATION: "⚠️ نحتاج إلى موقع التوصيل قبل تأكيد الطلب.",
    RejectionReason.INVALID_ITEMS: "⚠️ لا يمكن إرسال الطلب لأن السلة فارغة أو غير مكتملة.",
    RejectionReason.MISSING_PAYMENT_METHOD: "⚠️ فضلاً اختر وسيلة الدفع (إلكتروني أو نقدي) قبل تأكيد الطلب.",
    RejectionReason.MISSING_ORDER_TYPE: "⚠️ يرجى تحديد نوع الطلب (توصيل أو استلام) قبل المتابعة.",
    RejectionReason.CUSTOMER_INFO_MISSING: "⚠️ نحتاج إلى رقم هاتف صالح لإكمال الطلب. حاول مرة أخرى أو تواصل مع الدعم.",
    RejectionReason.CONFIG_MISSING: "⚠️ إعدادات الربط الخارجي غير مكتملة. يرجى إبلاغ فريق الدعم.",
    RejectionReason.MERCHANT_NOT_CONFIGURED: "⚠️ المتجر غير مكون بشكل صحيح. يرجى التواصل مع فريق الدعم.",
    RejectionReason.ORDER_NOT_FOUND: "⚠️ لم يتم العثور على طلب نشط لتأكيده. ابدأ طلباً جديداً من فضلك.",
    RejectionReason.UNKNOWN: "⚠️ رفض المطعم الطلب. راجع السلة أو تواصل مع الدعم.",
}

BTN_NEW_ORDER = QuickReply(NEW_ORDER, "🆕 طلب جديد")
BTN_TRACK_ORDER = QuickReply(TRACK_ORDER, "📦 تتبع الطلب")
BTN_SUPPORT = QuickReply(CONTACT_SUPPORT, "💬 الدعم")
BTN_APP = QuickReply(OPEN_APP, "🌐 اطلب عبر التطبيق")
BTN_DELIVERY = QuickReply(ORDER_DELIVERY, "🛵 توصيل")
BTN_PICKUP = QuickReply(ORDER_PICKUP, "🏠 استلام")
BTN_SEND_LOCATION = QuickReply(SEND_LOCATION, "📍 إرسال الموقع")
BTN_CHECKOUT = QuickReply(CHECKOUT, "🛒 المتابعة للدفع")
BTN_ADD_ITEM = QuickReply(ADD_ITEM, "➕ إضافة صنف")
BTN_VIEW_CART = QuickReply(VIEW_CART, "🧺 عرض السلة")
BTN_REMOVE_ITEM = QuickReply(REMOVE_ITEM, "🗑️ حذف صنف")
BTN_PAY_CASH = QuickReply(PAY_CASH, "💵 الدفع عند الاستلام")
BTN_PAY_ONLINE = QuickReply(PAY_ONLINE, "💳 دفع إلكتروني")


def welcome_prompt(tenant: TenantContext, profile_name: Optional[str] = None) -> list[OutboundMessage]:
    options = [BTN_NEW_ORDER, BTN_TRACK_ORDER, BTN_SUPPORT]
    if tenant.app_link:
        options.append(BTN_APP)
    customer = (profile_name or "").strip()
    if customer:
        body = MSG_WELCOME_NAMED.format(customer=customer, name=tenant.name)
    else:
        body = MSG_WELCOME.format(name=tenant.name)
    return [QuickReplies(body, options)]


def order_type_prompt() -> QuickReplies:
    return QuickReplies(MSG_ORDER_TYPE, [BTN_DELIVERY, BTN_PICKUP])


def location_prompt() -> TextMessage:
    return TextMessage(MSG_LOCATION_PROMPT)


def picker_message(picker: PickerContext) -> ListPicker:
    prefix = ROW_PREFIXES[picker.kind]
    rows = [ListRow(prefix + row.id, row.title, row.description) for row in picker.rows]
    if picker.page < picker.total_pages and picker.kind != PickerKind.REMOVE_ITEM:
        rows.append(ListRow(f"{PAGE_PREFIX}{picker.kind.value}_{picker.page + 1}", MSG_MORE))

    suffix = MSG_PAGE_SUFFIX.format(page=picker.page, total=picker.total_pages) if picker.total_pages > 1 else ""
    if picker.kind == PickerKind.BRANCHES:
        body, button = MSG_BRANCH_LIST, "عرض الفروع"
    elif picker.kind == PickerKind.CATEGORIES:
        body, button = MSG_CATEGORY_LIST, "عرض الفئات"
    elif picker.kind == PickerKind.ITEMS:
        body, button = MSG_ITEM_LIST.format(category=picker.category_name or "القسم"), "عرض الأطباق"
    else:
        body, button = MSG_REMOVE_PROMPT, "السلة"
    return ListPicker(body + suffix, button, rows, page=picker.page, total_pages=picker.total_pages)


def quantity_prompt(pending: PendingItem, max_quantity: int = MAX_ITEM_QUANTITY) -> list[OutboundMessage]:
    messages: list[OutboundMessage] = []
    if pending.image_url:
        messages.append(MediaAttachment(pending.image_url, caption=pending.name))
    messages.append(
        QuickReplies(
            MSG_QUANTITY_PROMPT.format(item=pending.name, max=max_quantity),
            [
                QuickReply(f"{QUANTITY_PREFIX}1", "1"),
                QuickReply(f"{QUANTITY_PREFIX}2", "2"),
                QuickReply(QTY_CUSTOM, "كمية أخرى"),
            ],
        )
    )
    return messages


def cart_actions(session: ConversationSession, header: str = MSG_CART_HEADER) -> QuickReplies:
    body = f"{header}\n{format_cart(session.cart)}\n\n{MSG_POST_ITEM}"
    return QuickReplies(body, [BTN_CHECKOUT, BTN_ADD_ITEM, BTN_VIEW_CART])


def cart_review(session: ConversationSession) -> QuickReplies:
    body = f"{MSG_CART_HEADER}\n{format_cart(session.cart)}"
    return QuickReplies(body, [BTN_CHECKOUT, BTN_ADD_ITEM, BTN_REMOVE_ITEM])


def describe_fulfillment(session: ConversationSession) -> str:
    if session.order_type == OrderType.DELIVERY:
        address = session.location.address if session.location else None
        return f"التوصيل إلى: {address or 'سيتم تحديد موقع التوصيل لاحقاً'}"
    if session.branch is not None:
        return f"الاستلام من: {session.branch.name} ({session.branch.address or 'سيتم التأكيد عند الوصول'})"
    return "الاستلام من الفرع (سيتم تحديد الفرع لاحقاً)."


def checkout_prompt(session: ConversationSession) -> QuickReplies:
    body = "\n".join(
        [
            MSG_ORDER_SUMMARY,
            format_cart(session.cart),
            describe_fulfillment(session),
            "",
            MSG_PAYMENT_PROMPT,
        ]
    )
    return QuickReplies(body, [BTN_PAY_CASH, BTN_PAY_ONLINE])


def payment_prompt(header: str = MSG_PAYMENT_PROMPT) -> QuickReplies:
    return QuickReplies(header, [BTN_PAY_CASH, BTN_PAY_ONLINE])


def min_order_message(session: ConversationSession, tenant: TenantContext) -> TextMessage:
    return TextMessage(
        MSG_MIN_ORDER.format(min=format_amount(tenant.min_order_total), currency=tenant.currency)
        + f"\n{MSG_CART_HEADER} {format_amount(total(session.cart))} {tenant.currency}"
    )


def prompt_for(
    session: ConversationSession, tenant: TenantContext, max_quantity: int = MAX_ITEM_QUANTITY
) -> list[OutboundMessage]:
    """The prompt that belongs to the session's current stage."""
    stage = session.stage

    if stage in (Stage.IDLE, Stage.POST_SUBMISSION):
        return welcome_prompt(tenant)
    if stage == Stage.AWAITING_ORDER_TYPE:
        return [order_type_prompt()]
    if stage == Stage.AWAITING_LOCATION:
        return [location_prompt()]
    if stage == Stage.AWAITING_QUANTITY and session.pending_item is not None:
        return quantity_prompt(session.pending_item, max_quantity)
    if stage in (Stage.AWAITING_BRANCH, Stage.BROWSING_CATEGORIES, Stage.BROWSING_ITEMS, Stage.AWAITING_QUANTITY):
        if session.last_picker is not None:
            return [picker_message(session.last_picker)]
        if stage == Stage.AWAITING_BRANCH:
            return [TextMessage(MSG_BRANCH_LIST)]
        return [QuickReplies(MSG_SELECT_ITEM_FIRST, [QuickReply(BROWSE_MENU, "📋 القائمة")])]
    if stage == Stage.CART_REVIEW:
        if session.last_picker is not None and session.last_picker.kind == PickerKind.REMOVE_ITEM:
            return [picker_message(session.last_picker)]
        if not session.cart:
            return [QuickReplies(MSG_CART_EMPTY, [BTN_ADD_ITEM])]
        return [cart_review(session)]
    if stage == Stage.CHECKOUT:
        return [checkout_prompt(session)]
    if stage == Stage.AWAITING_PAYMENT:
        return [payment_prompt(MSG_SUBMISSION_RETRY)]
    if stage == Stage.SUBMITTING:
        return [TextMessage(MSG_SUBMISSION_IN_PROGRESS)]
    if stage == Stage.MANUAL_HANDOFF:
        return [TextMessage(MSG_CONCIERGE.format(name=tenant.name))]
    return []
