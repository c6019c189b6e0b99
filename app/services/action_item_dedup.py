from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import Protocol, TypeVar

DUPLICATE_OVERLAP_THRESHOLD = 0.6

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]", flags=re.UNICODE)
_WHITESPACE_PATTERN = re.compile(r"\s+")


class _HasTitle(Protocol):
    title: str


TitledItem = TypeVar("TitledItem", bound=_HasTitle)


def normalize_action_item_text(value: str) -> str:
    without_punctuation = _PUNCTUATION_PATTERN.sub(" ", value.lower())
    return _WHITESPACE_PATTERN.sub(" ", without_punctuation).strip()


def tokenize(value: str) -> set[str]:
    normalized = normalize_action_item_text(value)
    if not normalized:
        return set()
    return set(normalized.split(" "))


def token_overlap_ratio(left: str, right: str) -> float:
    left_tokens = tokenize(left)
    right_tokens = tokenize(right)
    union = left_tokens | right_tokens
    if not union:
        return 0.0
    return len(left_tokens & right_tokens) / len(union)


def is_duplicate_action_item(generated: str, native_items: Iterable[str]) -> bool:
    """Return True when ``generated`` restates any of ``native_items``.

    A match is an exact normalized match, containment in either direction, or
    a token-set overlap strictly above ``DUPLICATE_OVERLAP_THRESHOLD``.
    """
    normalized_generated = normalize_action_item_text(generated)
    if not normalized_generated:
        return False

    for native in native_items:
        normalized_native = normalize_action_item_text(native)
        if not normalized_native:
            continue
        if normalized_generated == normalized_native:
            return True
        if normalized_generated in normalized_native or normalized_native in normalized_generated:
            return True
        if token_overlap_ratio(normalized_generated, normalized_native) > DUPLICATE_OVERLAP_THRESHOLD:
            return True
    return False


def deduplicate_action_items(
    generated: Sequence[TitledItem],
    native_titles: Iterable[str],
) -> list[TitledItem]:
    kept_titles = [title for title in native_titles if title]
    survivors: list[TitledItem] = []
    for item in generated:
        if is_duplicate_action_item(item.title, kept_titles):
            continue
        survivors.append(item)
        kept_titles.append(item.title)
    return survivors
