"""Cards and the card pool boundary.

The catalog/image provider is an external collaborator. The engine only
relies on ``fetch_candidate_cards`` and tolerates short or duplicated
batches by retrying with a bounded budget.
"""

import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol, Set

ALL_SETS = 'all'

# Rarity labels counted as "rare" when a lobby asks for rare cards only
RARE_RARITIES = frozenset({
    'Chromatique ultra rare',
    'Deux Chromatiques',
    'Dresseur Full Art',
    'HIGH-TECG rare',
    'Holo Rare V',
    'Holo Rare VMAX',
    'Holo Rare VSTAR',
    'Hyper rare',
    'Illustration rare',
    'Illustration spéciale rare',
    'LÉGENDE',
    'Magnifique',
    'Magnifique rare',
    'Méga Hyper Rare',
    'Radieux Rare',
    'Rare Holo LV.X',
    'Rare Noir Blanc',
    'Rare Prime',
    'Shiny rare',
    'Shiny rare V',
    'Shiny rare VMAX',
    'Ultra Rare',
    'Un Chromatique',
})

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Card:
    id: str
    name: str
    full_image_ref: str
    set_name: str
    rarity: str
    partial_reveal: str

    @classmethod
    def from_dict(cls, data: dict) -> 'Card':
        return cls(
            id=str(data['id']),
            name=data['name'],
            full_image_ref=data.get('image') or data.get('full_image_ref', ''),
            set_name=data.get('set') or data.get('set_name', ''),
            rarity=data.get('rarity', ''),
            partial_reveal=data.get('reveal') or data.get('partial_reveal', ''),
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'fullImageRef': self.full_image_ref,
            'setName': self.set_name,
            'rarity': self.rarity,
        }


class CardPool(Protocol):
    def fetch_candidate_cards(self, set_filter: Set[str], rarity_filter: Optional[Set[str]],
                              count: int) -> List[Card]:
        ...


class CatalogCardPool:
    """Card pool backed by a JSON catalog file.

    Each record carries ``id``, ``name``, ``image``, ``set``, ``set_id``,
    ``rarity`` and ``reveal`` (the precomputed partial image). Sampling is
    random, so repeated calls may return overlapping cards.
    """

    def __init__(self, cards: Iterable[Card], set_ids: Optional[dict] = None, rng: random.Random = None):
        self.cards = list(cards)
        # card id -> set id, so filters accept either set ids or set names
        self.set_ids = set_ids or {}
        self.rng = rng or random.Random()

    @classmethod
    def from_file(cls, path: str, rng: random.Random = None) -> 'CatalogCardPool':
        with open(path, encoding='utf-8') as fh:
            records = json.load(fh)
        cards = [Card.from_dict(r) for r in records]
        set_ids = {str(r['id']): r.get('set_id') for r in records if r.get('set_id')}
        return cls(cards, set_ids=set_ids, rng=rng)

    def _matches(self, card: Card, set_filter, rarity_filter) -> bool:
        if set_filter and ALL_SETS not in set_filter:
            if card.set_name not in set_filter and self.set_ids.get(card.id) not in set_filter:
                return False
        if rarity_filter and card.rarity not in rarity_filter:
            return False
        return True

    def fetch_candidate_cards(self, set_filter, rarity_filter, count):
        candidates = [c for c in self.cards if self._matches(c, set_filter, rarity_filter)]
        if not candidates or count <= 0:
            return []
        return self.rng.sample(candidates, min(count, len(candidates)))


def gather_cards(pool: CardPool, set_filter: Set[str], rarity_filter: Optional[Set[str]], count: int,
                 attempts: int = 5, backoff_ms: int = 200,
                 sleep: Callable[[float], None] = time.sleep) -> List[Card]:
    """Collect up to ``count`` unique cards from the pool.

    Retries with linear backoff until enough unique cards are gathered or
    the attempt budget runs out; then returns whatever was collected,
    possibly fewer than requested.
    """
    gathered: List[Card] = []
    seen: Set[str] = set()
    for attempt in range(1, max(1, attempts) + 1):
        missing = count - len(gathered)
        if missing <= 0:
            break
        batch = pool.fetch_candidate_cards(set_filter, rarity_filter, missing) or []
        for card in batch:
            if card.id in seen:
                continue
            seen.add(card.id)
            gathered.append(card)
            if len(gathered) >= count:
                break
        logger.info(f"[card-fetch] attempt={attempt} got={len(batch)} unique={len(gathered)} wanted={count}")
        if len(gathered) < count and attempt < attempts and backoff_ms:
            sleep(backoff_ms * attempt / 1000.0)
    return gathered
