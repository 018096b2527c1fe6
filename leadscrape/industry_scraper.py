from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from .captcha import CaptchaDetector
from .config import ScraperConfig
from .errors import ExtractionError
from .extractors import (
    Card,
    ExtractorChain,
    clean_text,
    default_address_chain,
    default_map_link_chain,
    default_phone_chain,
)
from .logging_utils import log_event
from .models import BusinessRecord
from .navigation import NavigationManager

logger = logging.getLogger(__name__)

SEARCH_URL = "https://www.google.com/maps/search/{query}"

REGION_MARKERS = (
    "south africa",
    "gauteng",
    "western cape",
    "eastern cape",
    "northern cape",
    "free state",
    "kwazulu-natal",
    "limpopo",
    "mpumalanga",
    "north west",
    "northwest",
)

HAS_FEED_JS = "() => document.querySelector('div[role=\"feed\"]') !== null"

SCROLL_FEED_JS = """() => {
  const feed = document.querySelector('div[role="feed"]');
  if (feed) { feed.scrollTop = feed.scrollHeight; }
}"""

END_OF_LIST_JS = """() => {
  const text = document.body ? (document.body.textContent || '') : '';
  return text.includes("You've reached the end of the list")
    || text.includes("You've reached the end")
    || text.includes('No more results');
}"""

CARD_COUNT_JS = "() => document.querySelectorAll('div[role=\"feed\"] .Nv2PK').length"

EXTRACT_CARDS_JS = """() => Array.from(document.querySelectorAll('div[role="feed"] .Nv2PK')).map(card => {
  const nameEl = card.querySelector('.qBF1Pd');
  const phoneEl = card.querySelector('.UsdlK');
  const texts = [];
  card.querySelectorAll('.W4Efsd span').forEach(span => {
    if (span.classList.contains('UsdlK') || span.querySelector('.UsdlK')) { return; }
    const t = (span.textContent || '').trim();
    if (t) { texts.push(t); }
  });
  return {
    name: nameEl ? (nameEl.textContent || '').trim() : '',
    phone: phoneEl ? (phoneEl.textContent || '').trim() : '',
    hrefs: Array.from(card.querySelectorAll('a')).map(a => a.href || ''),
    texts: texts,
  };
})"""

SINGLE_VIEW_JS = """() => {
  const main = document.querySelector('div[role="main"]');
  const h1 = main ? main.querySelector('h1') : null;
  let address = '';
  for (const sel of ['button[data-item-id="address"]', 'div[data-item-id="address"]', 'button[aria-label*="Address"]']) {
    const el = document.querySelector(sel);
    if (el && (el.textContent || '').trim()) { address = el.textContent.trim(); break; }
  }
  const phoneButton = document.querySelector('button[data-item-id^="phone:tel:"]');
  return {
    name: h1 ? (h1.textContent || '').trim() : '',
    url: window.location.href,
    address: address,
    phone_label: phoneButton ? (phoneButton.getAttribute('aria-label') || '') : '',
    main_text: main ? (main.textContent || '') : '',
  };
}"""

_PHONE_IN_LABEL = re.compile(r"\+?\d[\d\s\-()]+\d")
_PHONE_IN_TEXT = re.compile(r"\d{3}[\s\-]?\d{3}[\s\-]?\d{4}")


def build_search_query(town: str, industry: str, country: str = "South Africa") -> str:
    town = town.strip()
    industry = (industry or "").strip()
    lowered = town.lower()
    has_region = any(marker in lowered for marker in REGION_MARKERS) or country.lower() in lowered
    query = f"{industry} in {town}" if industry else town
    if not has_region and country:
        query = f"{query}, {country}"
    return query


def build_search_url(town: str, industry: str, country: str = "South Africa") -> str:
    return SEARCH_URL.format(query=quote(build_search_query(town, industry, country), safe=""))


class IndustryScraper:
    """Scrapes the map listings for one (town, industry) pair on an open page."""

    def __init__(
        self,
        page: Any,
        navigator: NavigationManager,
        config: Optional[ScraperConfig] = None,
        captcha_detector: Optional[CaptchaDetector] = None,
        sleep: Callable[[float], None] = time.sleep,
        map_link_chain: Optional[ExtractorChain] = None,
        phone_chain: Optional[ExtractorChain] = None,
        address_chain: Optional[ExtractorChain] = None,
    ) -> None:
        self._page = page
        self._navigator = navigator
        self._config = config or ScraperConfig()
        self._captcha = captcha_detector
        self._sleep = sleep
        self._map_link = map_link_chain or default_map_link_chain()
        self._phone = phone_chain or default_phone_chain()
        self._address = address_chain or default_address_chain()

    def scrape(self, town: str, industry: str) -> List[BusinessRecord]:
        """Load the search page and return every business with a name.

        NavigationError and CaptchaDetectedError propagate to the caller.
        """
        return self._scrape_url(build_search_url(town, industry, self._config.country), town, industry)

    def _scrape_url(self, url: str, town: str, industry: str) -> List[BusinessRecord]:
        nav = self._navigator.navigate_with_retry(self._page, url)
        if self._captcha is not None:
            self._captcha.detect(self._page, nav.status).raise_if_detected(url)

        if self._config.settle_secs > 0:
            self._sleep(self._config.settle_secs)

        if self._page.evaluate(HAS_FEED_JS):
            records = self._from_list_view(town, industry)
            view = "list"
        else:
            records = self._from_single_view(town, industry)
            view = "single"

        log_event(logger, logging.INFO, "industry_scraped", town=town, industry=industry, view=view, businesses=len(records))
        return records

    def parse_card(self, card: Card, town: str, industry: str) -> BusinessRecord:
        name = clean_text(card.get("name"))
        if not name:
            raise ExtractionError("listing card has no name")
        return BusinessRecord(
            name=name,
            town=town,
            industry=industry,
            phone=self._phone.extract(card),
            address=self._address.extract(card),
            map_link=self._map_link.extract(card),
        )

    def _from_list_view(self, town: str, industry: str) -> List[BusinessRecord]:
        self._scroll_to_end()
        cards: List[Dict[str, Any]] = self._page.evaluate(EXTRACT_CARDS_JS) or []
        records: List[BusinessRecord] = []
        for position, card in enumerate(cards):
            try:
                records.append(self.parse_card(card, town, industry))
            except ExtractionError as exc:
                log_event(logger, logging.WARNING, "card_skipped", town=town, industry=industry, position=position, reason=str(exc))
        return records

    def _scroll_to_end(self) -> None:
        cfg = self._config
        previous = -1
        stale = 0
        for _ in range(cfg.max_scroll_rounds):
            self._page.evaluate(SCROLL_FEED_JS)
            if cfg.scroll_pause_secs > 0:
                self._sleep(cfg.scroll_pause_secs)
            if self._page.evaluate(END_OF_LIST_JS):
                return
            count = self._page.evaluate(CARD_COUNT_JS)
            if count == previous:
                stale += 1
                if stale >= cfg.stale_scroll_rounds:
                    return
            else:
                stale = 0
                previous = count

    def _from_single_view(self, town: str, industry: str) -> List[BusinessRecord]:
        data = self._page.evaluate(SINGLE_VIEW_JS) or {}
        name = clean_text(data.get("name"))
        if not name:
            log_event(logger, logging.INFO, "single_view_without_name", town=town, industry=industry)
            return []

        phone = None
        match = _PHONE_IN_LABEL.search(data.get("phone_label") or "")
        if match is None:
            match = _PHONE_IN_TEXT.search(data.get("main_text") or "")
        if match is not None:
            phone = match.group(0).strip()

        return [
            BusinessRecord(
                name=name,
                town=town,
                industry=industry,
                phone=phone,
                address=clean_text(data.get("address")) or None,
                map_link=data.get("url") or None,
            )
        ]


class BusinessLookupScraper(IndustryScraper):
    """Searches the map listings for a free-text business query.

    The query is sent as typed, without a town or country suffix. Records
    carry the query as their industry and an empty town.
    """

    def lookup(self, query: str) -> List[BusinessRecord]:
        query = (query or "").strip()
        if not query:
            raise ValueError("business query must not be empty")
        return self._scrape_url(SEARCH_URL.format(query=quote(query, safe="")), "", query)
