import re
from enum import Enum
from typing import Optional

from orderbot.services.errors import MalformedAddress

CHANNEL_PREFIX = "whatsapp:"
_NON_DIGITS = re.compile(r"\D+")
_ARABIC_INDIC_DIGITS = str.maketrans("٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹", "01234567890123456789")


class Channel(str, Enum):
    WHATSAPP = "whatsapp"  # whatsapp:+966500000000
    E164 = "e164"  # +966500000000
    BACKEND = "backend"  # 966500000000


def canonicalize(raw_address: Optional[str]) -> str:
    """Reduce any observed sender format to the bare-digit customer key.

    "whatsapp:+966 50 000 0000", "+966500000000" and "966500000000" all
    yield "966500000000". Feeding the result back in returns it unchanged.
    """
    if not raw_address:
        raise MalformedAddress(raw_address)

    value = raw_address.strip().translate(_ARABIC_INDIC_DIGITS)
    if value.casefold().startswith(CHANNEL_PREFIX):
        value = value[len(CHANNEL_PREFIX):]

    digits = _NON_DIGITS.sub("", value)
    if not digits:
        raise MalformedAddress(raw_address)
    return digits


def for_channel(key: str, channel: Channel) -> str:
    if channel == Channel.WHATSAPP:
        return f"{CHANNEL_PREFIX}+{key}"
    if channel == Channel.E164:
        return f"+{key}"
    return key
