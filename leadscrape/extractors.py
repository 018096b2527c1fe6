"""Field extractors for listing cards.

A card is the plain dict produced by the page script in industry_scraper:
``{"name": str, "phone": str, "hrefs": [str], "texts": [str]}``. Each field
has a chain of strategies tried in priority order; a chain that finds
nothing returns None rather than failing the card.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from .phones import looks_like_phone

Card = Dict[str, Any]

MAP_PLACE_PATTERN = re.compile(r"/maps/place/|[?&]cid=\d+|/maps\?.*\bq=", re.IGNORECASE)
MAP_HOST_PATTERN = re.compile(r"(google\.[a-z.]+/maps|maps\.google\.|goo\.gl/maps|maps\.app\.goo\.gl)", re.IGNORECASE)

_OPENING_HOURS = (
    re.compile(r"^(open|closed|opens|closes)", re.IGNORECASE),
    re.compile(r"\d{1,2}:\d{2}\s*(am|pm)", re.IGNORECASE),
    re.compile(r"^(mon|tue|wed|thu|fri|sat|sun)", re.IGNORECASE),
)
_RATING = (
    re.compile(r"^\d+(\.\d+)?\s*\([\d,]+\)"),
    re.compile(r"^\d+(\.\d+)?\s*stars?", re.IGNORECASE),
    re.compile(r"^\d+(\.\d+)?/5"),
)
_PHONE_IN_TEXT = (
    re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}"),
    re.compile(r"\+?\d{10,}"),
    re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),
)
_NOISE_WORDS = ("open", "close", "wheelchair")
ADDRESS_INDICATORS = re.compile(
    r"\b(street|st|ave|avenue|road|rd|drive|dr|lane|ln|way|blvd|boulevard|crescent|cres)\b\.?",
    re.IGNORECASE,
)


def is_opening_hours(text: str) -> bool:
    return any(p.search(text) for p in _OPENING_HOURS)


def looks_like_rating(text: str) -> bool:
    return any(p.search(text) for p in _RATING)


def contains_phone(text: str) -> bool:
    if sum(ch.isdigit() for ch in text) < 7:
        return False
    return any(p.search(text) for p in _PHONE_IN_TEXT)


def clean_text(text: Optional[str]) -> str:
    text = (text or "").strip()
    if text.startswith("·"):
        text = text[1:].strip()
    return text


class Extractor(ABC):
    """One strategy for pulling a field out of a card."""

    @abstractmethod
    def extract(self, card: Card) -> Optional[str]:
        ...


class ExtractorChain:
    """Tries extractors in order and returns the first non-empty value."""

    def __init__(self, extractors: Iterable[Extractor]) -> None:
        self._extractors: List[Extractor] = list(extractors)

    def extract(self, card: Card) -> Optional[str]:
        for extractor in self._extractors:
            value = extractor.extract(card)
            if value:
                return value
        return None


class PatternHrefExtractor(Extractor):
    """First anchor whose URL matches a map-place pattern."""

    def __init__(self, pattern: re.Pattern = MAP_PLACE_PATTERN) -> None:
        self._pattern = pattern

    def extract(self, card: Card) -> Optional[str]:
        for href in card.get("hrefs") or []:
            if href and self._pattern.search(href):
                return href
        return None


class FirstHrefExtractor(Extractor):
    """The card's first anchor, kept only if it plausibly points at a map."""

    def __init__(self, pattern: re.Pattern = MAP_HOST_PATTERN) -> None:
        self._pattern = pattern

    def extract(self, card: Card) -> Optional[str]:
        hrefs = [h for h in (card.get("hrefs") or []) if h]
        if not hrefs:
            return None
        first = hrefs[0]
        if self._pattern.search(first) or "maps" in first.lower():
            return first
        return None


class FieldExtractor(Extractor):
    def __init__(self, key: str) -> None:
        self._key = key

    def extract(self, card: Card) -> Optional[str]:
        value = clean_text(card.get(self._key))
        return value or None


class PhoneTextExtractor(Extractor):
    """Falls back to the first card text that is shaped like a phone number."""

    def extract(self, card: Card) -> Optional[str]:
        for text in card.get("texts") or []:
            text = clean_text(text)
            if looks_like_phone(text):
                return text
        return None


class AddressHeuristicExtractor(Extractor):
    """Picks the first text that reads like an address.

    Opening hours, ratings, phone numbers and accessibility notes are
    skipped. Short texts (three words or fewer) are taken to be the
    business category and skipped as well.
    """

    def extract(self, card: Card) -> Optional[str]:
        for raw in card.get("texts") or []:
            text = clean_text(raw)
            if not text or text == "·":
                continue
            lowered = text.lower()
            if is_opening_hours(text) or looks_like_rating(text) or contains_phone(text):
                continue
            if any(word in lowered for word in _NOISE_WORDS):
                continue
            has_indicator = bool(ADDRESS_INDICATORS.search(text))
            if len(text.split()) <= 3 and not has_indicator:
                continue
            if has_indicator or len(text) > 10:
                return text
        return None


def default_map_link_chain() -> ExtractorChain:
    return ExtractorChain([PatternHrefExtractor(), FirstHrefExtractor()])


def default_phone_chain() -> ExtractorChain:
    return ExtractorChain([FieldExtractor("phone"), PhoneTextExtractor()])


def default_address_chain() -> ExtractorChain:
    return ExtractorChain([AddressHeuristicExtractor()])
