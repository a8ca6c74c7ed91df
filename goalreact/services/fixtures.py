"""Upcoming fixtures discovered from the exchange's own event listings."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from goalreact.services.betfair_transport import ExchangeError
from goalreact.services.exchange import ExchangeClient
from goalreact.utils.constants import (
    COMPETITION_IDS,
    COMPETITION_NAMES,
    SOCCER_EVENT_TYPE_ID,
    TOTALS_MARKET_TYPE,
)

logger = logging.getLogger(__name__)


@dataclass
class Fixture:
    event_id: str
    event_name: str
    home: str | None
    away: str | None
    kickoff_at: datetime
    competition: str | None = None


def parse_exchange_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def split_event_name(name: str) -> tuple[str | None, str | None]:
    parts = name.split(" v ")
    if len(parts) != 2:
        return None, None
    return parts[0].strip() or None, parts[1].strip() or None


class ExchangeFixtureSource:
    """Lists soccer events for the configured competitions."""

    def __init__(
        self,
        exchange: ExchangeClient,
        competition_names: list[str] | None = None,
        fallback_competition_ids: dict[str, str] | None = None,
    ):
        self.exchange = exchange
        self.competition_names = {n.lower() for n in (competition_names or COMPETITION_NAMES)}
        self.fallback_competition_ids = fallback_competition_ids or COMPETITION_IDS

    async def _competitions(self) -> dict[str, str]:
        found = {}
        for entry in await self.exchange.list_competitions([SOCCER_EVENT_TYPE_ID]):
            comp = entry.get("competition") or {}
            if (comp.get("name") or "").lower() in self.competition_names and comp.get("id"):
                found[str(comp["id"])] = comp["name"]
        if not found:
            logger.warning("[fixtures] No competitions matched by name, using known ids")
            found = dict(self.fallback_competition_ids)
        return found

    async def upcoming(self, now: datetime, lookahead_days: int) -> list[Fixture]:
        competitions = await self._competitions()
        events = await self.exchange.list_events({
            "eventTypeIds": [SOCCER_EVENT_TYPE_ID],
            "competitionIds": list(competitions),
            "marketStartTime": {
                "from": now.isoformat(),
                "to": (now + timedelta(days=lookahead_days)).isoformat(),
            },
        })

        event_ids = [e["event"]["id"] for e in events if (e.get("event") or {}).get("id")]
        competition_by_event: dict[str, str] = {}
        if event_ids:
            # listEvents carries no competition; the market catalogue does
            try:
                catalogue = await self.exchange.list_market_catalogue(
                    {"eventIds": event_ids, "marketTypeCodes": [TOTALS_MARKET_TYPE]},
                    projection=["EVENT", "COMPETITION"],
                    max_results=1000,
                )
            except ExchangeError as e:
                logger.warning(f"[fixtures] Competition lookup failed: {e}")
                catalogue = []
            for market in catalogue:
                evt_id = (market.get("event") or {}).get("id")
                comp = market.get("competition") or {}
                if evt_id and comp.get("name"):
                    competition_by_event[evt_id] = competitions.get(str(comp.get("id")), comp["name"])

        fixtures = []
        for entry in events:
            evt = entry.get("event") or {}
            if not evt.get("id") or not evt.get("openDate"):
                continue
            name = evt.get("name") or ""
            home, away = split_event_name(name)
            competition = competition_by_event.get(evt["id"])
            if competition is None and len(competitions) == 1:
                competition = next(iter(competitions.values()))
            fixtures.append(Fixture(
                event_id=evt["id"],
                event_name=name,
                home=home,
                away=away,
                kickoff_at=parse_exchange_time(evt["openDate"]),
                competition=competition,
            ))
        logger.info(f"[fixtures] Found {len(fixtures)} upcoming events")
        return fixtures
