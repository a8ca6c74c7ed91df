"""Resolve scheduled fixtures to tradable exchange markets and runners.

Fixture feeds and the exchange spell team names differently ("Wolves" vs
"Wolverhampton", "AFC Bournemouth" vs "Bournemouth"), so both the event
name and the runner name are matched fuzzily against the market catalogue.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from goalreact.services.betfair_transport import ExchangeError
from goalreact.services.exchange import ExchangeClient
from goalreact.utils.constants import DRAW_RUNNER_NAME, SOCCER_EVENT_TYPE_ID

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.8
KICKOFF_WINDOW = timedelta(hours=12)

_NOISE_WORDS = re.compile(r"\b(fc|ifk|sc|fk|afc|ac|u19|u20|u21|u23|women)\b")
_MARKET_KEY = re.compile(r"^(.*?)(?: \(line: ([0-9.]+)\))?$")


def normalize_name(raw: str) -> str:
    name = _NOISE_WORDS.sub("", (raw or "").lower())
    name = name.replace(" v ", " vs ")
    name = re.sub(r"[^a-z0-9\s]", "", name)
    return re.sub(r"\s{2,}", " ", name).strip()


def find_best_match(
    source: str,
    candidates: list[str],
    threshold: float = SIMILARITY_THRESHOLD,
) -> tuple[int, float] | None:
    """Index and score of the closest candidate, or None below ``threshold``."""
    if not candidates:
        return None
    best = process.extractOne(
        source,
        candidates,
        scorer=Levenshtein.normalized_similarity,
        processor=normalize_name,
    )
    if best is None:
        return None
    match, score, index = best
    if score < threshold:
        logger.warning(f"[locator] Fuzzy match failed for '{source}': best '{match}' ({score:.2f})")
        return None
    logger.debug(f"[locator] Fuzzy match '{source}' -> '{match}' ({score:.2f})")
    return index, score


@dataclass
class EventDescriptor:
    home: str
    away: str
    kickoff_at: datetime
    event_id: str | None = None

    @property
    def name(self) -> str:
        return f"{self.home} v {self.away}"


@dataclass
class MarketDescriptor:
    market_type: str  # exchange market type code, e.g. OVER_UNDER_25
    runner_name: str

    @classmethod
    def parse(cls, market_key: str, selection: str, event: EventDescriptor) -> "MarketDescriptor":
        """Build from a feed market key such as ``h2h`` or ``totals (line: 2.5)``."""
        m = _MARKET_KEY.match(market_key.strip())
        base, line = (m.group(1), m.group(2)) if m else (market_key, None)

        if base == "totals" and line:
            value = float(line)
            line_text = f"{value:.1f} Goals"
            market_type = f"OVER_UNDER_{round(value * 10)}"
            if re.search(r"over", selection, re.I):
                return cls(market_type, f"Over {line_text}")
            if re.search(r"under", selection, re.I):
                return cls(market_type, f"Under {line_text}")
            return cls(market_type, selection)

        if re.search(r"draw", selection, re.I):
            return cls("MATCH_ODDS", DRAW_RUNNER_NAME)
        if selection == event.home:
            return cls("MATCH_ODDS", event.home)
        if selection == event.away:
            return cls("MATCH_ODDS", event.away)
        return cls("MATCH_ODDS", selection)


@dataclass
class ResolvedMarket:
    market_id: str
    selection_id: int
    runner_name: str
    event_id: str | None
    event_name: str | None
    score: float


async def resolve_event_type_id(exchange: ExchangeClient, name: str = "Soccer") -> str:
    for entry in await exchange.list_event_types():
        event_type = entry.get("eventType") or {}
        if event_type.get("name") == name:
            return event_type.get("id")
    return SOCCER_EVENT_TYPE_ID


async def resolve_market(
    exchange: ExchangeClient,
    event: EventDescriptor,
    market: MarketDescriptor,
    threshold: float = SIMILARITY_THRESHOLD,
) -> ResolvedMarket | None:
    """Find the market and selection ids for a fixture, or None if not found."""
    try:
        if event.event_id:
            catalogue = await exchange.list_market_catalogue(
                {"eventIds": [event.event_id], "marketTypeCodes": [market.market_type]},
                projection=["EVENT", "RUNNER_DESCRIPTION"],
            )
        else:
            event_type_id = await resolve_event_type_id(exchange)
            market_filter = {
                "eventTypeIds": [event_type_id],
                "marketTypeCodes": [market.market_type],
                "marketStartTime": {
                    "from": (event.kickoff_at - KICKOFF_WINDOW).isoformat(),
                    "to": (event.kickoff_at + KICKOFF_WINDOW).isoformat(),
                },
                "textQuery": f"{event.home} {event.away}",
            }
            catalogue = await exchange.list_market_catalogue(
                market_filter, projection=["EVENT", "RUNNER_DESCRIPTION"], max_results=50
            )
            if not catalogue:
                # Text search misses when the names differ too much; widen to the time window
                market_filter.pop("textQuery")
                catalogue = await exchange.list_market_catalogue(
                    market_filter, projection=["EVENT", "RUNNER_DESCRIPTION"], max_results=200
                )
    except ExchangeError as e:
        logger.error(f"[locator] Catalogue lookup for {event.name} failed: {e}")
        return None

    if not catalogue:
        logger.warning(f"[locator] No {market.market_type} markets for {event.name}")
        return None

    if event.event_id or len(catalogue) == 1:
        chosen, event_score = catalogue[0], 1.0
    else:
        names = [(m.get("event") or {}).get("name") or m.get("marketName") or "" for m in catalogue]
        hit = find_best_match(event.name, names, threshold)
        if hit is None:
            return None
        chosen, event_score = catalogue[hit[0]], hit[1]

    runners = chosen.get("runners") or []
    runner_hit = find_best_match(market.runner_name, [r.get("runnerName") or "" for r in runners], threshold)
    if runner_hit is None:
        logger.warning(f"[locator] Runner '{market.runner_name}' not found in {chosen.get('marketId')}")
        return None
    runner = runners[runner_hit[0]]

    evt = chosen.get("event") or {}
    return ResolvedMarket(
        market_id=chosen.get("marketId"),
        selection_id=runner.get("selectionId"),
        runner_name=runner.get("runnerName"),
        event_id=evt.get("id") or event.event_id,
        event_name=evt.get("name"),
        score=min(event_score, runner_hit[1]),
    )
