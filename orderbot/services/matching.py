import re
from typing import Mapping, Optional

from rapidfuzz import fuzz, process

DEFAULT_FUZZY_THRESHOLD = 85
MIN_FUZZY_LENGTH = 3


def normalize_for_matching(text: Optional[str]) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""

    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    # "Cola!" -> "cola", "؟القائمة" -> "القائمة"
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def best_match(
    text: str,
    choices: Mapping[str, str],
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> Optional[str]:
    """Return the key of the choice whose label best matches text, or None.

    choices maps an entity id to its display label. An exact normalized
    match always wins; otherwise the best token_sort_ratio score at or above
    threshold is taken.
    """
    query = normalize_for_matching(text)
    if not query or not choices:
        return None

    labels = {key: normalize_for_matching(label) for key, label in choices.items()}
    for key, label in labels.items():
        if label == query:
            return key

    if len(query) < MIN_FUZZY_LENGTH:
        return None

    match = process.extractOne(query, labels, scorer=fuzz.token_sort_ratio, score_cutoff=threshold)
    if not match:
        return None
    _label, _score, key = match
    return key


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-phrase containment on normalized text."""
    normalized = normalize_for_matching(text)
    target = normalize_for_matching(phrase)
    if not normalized or not target:
        return False
    return re.search(rf"(?<!\w){re.escape(target)}(?!\w)", normalized) is not None
