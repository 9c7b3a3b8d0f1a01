"""Order-book quoting.

Offers are requested with ``taker_gets`` set to the asset we want and
``taker_pays`` set to the asset we spend, so every level reads as "pay
``pays`` to get ``gets``". Levels are consumed best quality first until the
input budget runs out, yielding a volume-weighted rate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from amm_bot.errors import DataError
from amm_bot.models import parse_amount

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookLevel:
    pays: float
    gets: float

    @property
    def quality(self) -> float:
        return self.pays / self.gets


@dataclass(frozen=True)
class BookFill:
    amount_in: float
    amount_out: float
    levels_consumed: int

    @property
    def effective_rate(self) -> float:
        """Input spent per unit received; 0 when nothing fills."""
        return self.amount_in / self.amount_out if self.amount_out > 0 else 0.0


def parse_level(offer: Dict[str, Any]) -> BookLevel:
    # funded amounts reflect the owner's balance, prefer them when present
    gets_raw = offer.get("taker_gets_funded", offer.get("TakerGets"))
    pays_raw = offer.get("taker_pays_funded", offer.get("TakerPays"))
    if gets_raw is None or pays_raw is None:
        raise DataError("offer without TakerGets/TakerPays")
    gets = parse_amount(gets_raw).value
    pays = parse_amount(pays_raw).value
    if gets <= 0 or pays <= 0:
        raise DataError("empty offer")
    return BookLevel(pays=pays, gets=gets)


def parse_levels(offers: Iterable[Dict[str, Any]]) -> List[BookLevel]:
    levels: List[BookLevel] = []
    for offer in offers:
        try:
            levels.append(parse_level(offer))
        except DataError as exc:
            LOGGER.debug("skipping offer: %s", exc)
    levels.sort(key=lambda level: level.quality)
    return levels


def walk_book(levels: Iterable[BookLevel], budget_in: float) -> BookFill:
    spent = 0.0
    received = 0.0
    consumed = 0
    for level in levels:
        if spent >= budget_in:
            break
        take = min(level.pays, budget_in - spent)
        spent += take
        received += take / level.pays * level.gets
        consumed += 1
    return BookFill(amount_in=spent, amount_out=received, levels_consumed=consumed)
