"""
Final per-slot reranking.

Takes the candidates produced by whichever matcher ran for a slot and
applies the request's set rules: excluded sets are dropped, preferred sets
and hinted items receive a small additive bonus, duplicates collapse to the
best-scoring entry, verified candidates are moved ahead of unverified ones
and the list is capped.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, List, Optional, Tuple

from .config import SuggestionConfig
from .models import Candidate, ItemReasons
from .scoring import clamp_score, rank_candidates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetRules:
    """Request-level constraints applied by the reranker."""
    exclude_sets: FrozenSet[int] = field(default_factory=frozenset)
    preferred_set_ids: FrozenSet[int] = field(default_factory=frozenset)
    hint_item_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def create(cls,
               exclude_sets: Optional[Iterable[int]] = None,
               preferred_set_ids: Optional[Iterable[int]] = None,
               hint_item_ids: Optional[Iterable[int]] = None) -> "SetRules":
        return cls(
            exclude_sets=frozenset(exclude_sets or ()),
            preferred_set_ids=frozenset(preferred_set_ids or ()),
            hint_item_ids=frozenset(hint_item_ids or ()),
        )

    def with_preferred(self, set_ids: Iterable[int]) -> "SetRules":
        return replace(self, preferred_set_ids=self.preferred_set_ids | frozenset(set_ids))


def normalized_delta_e(candidate: Candidate, max_delta_e: float = 100.0) -> float:
    """
    Color distance for any candidate, whatever mode produced it.

    Item candidates without an explicit deltaE map their silhouette
    distance onto the deltaE scale; color candidates without one derive it
    from their color score.
    """
    reasons = candidate.reasons
    if reasons.delta_e is not None:
        return float(reasons.delta_e)
    if isinstance(reasons, ItemReasons):
        return clamp_score(reasons.chamfer) * max_delta_e
    return (1.0 - clamp_score(reasons.color_score)) * max_delta_e


def set_bonus(candidate: Candidate, delta_e: float, rules: SetRules,
              config: SuggestionConfig) -> float:
    if candidate.set_id is None or candidate.set_id not in rules.preferred_set_ids:
        return 0.0
    bonus = config.set_bonus
    if delta_e < config.set_tight_delta_e:
        bonus *= 2
    return min(bonus, config.set_bonus_max)


def rerank_and_constrain(slot: str,
                         candidates: List[Candidate],
                         rules: SetRules,
                         config: SuggestionConfig) -> Tuple[List[Candidate], List[str]]:
    """
    Apply set rules to one slot's candidates and produce the final list.

    Args:
        slot: Slot key (used for notes and logging).
        candidates: Output of the item or color matcher for this slot.
        rules: Exclusions, preferred sets and hinted items.
        config: Pipeline configuration (bonus sizes, max candidates).

    Returns:
        Tuple of (ranked candidates, notes). The list holds no duplicate
        item ids, puts verified entries first and never exceeds
        config.max_candidates.
    """
    best = {}
    order = []

    for candidate in candidates:
        if candidate.set_id is not None and candidate.set_id in rules.exclude_sets:
            continue

        delta_e = normalized_delta_e(candidate, config.max_delta_e)
        bonus = set_bonus(candidate, delta_e, rules, config)
        if candidate.item_id in rules.hint_item_ids:
            bonus += config.hint_boost

        adjusted = replace(
            candidate,
            reasons=replace(candidate.reasons, delta_e=delta_e),
            score=clamp_score(candidate.score + bonus),
            bonus=candidate.bonus + bonus,
        )

        existing = best.get(adjusted.item_id)
        if existing is None:
            order.append(adjusted.item_id)
            best[adjusted.item_id] = adjusted
        elif adjusted.score > existing.score:
            best[adjusted.item_id] = adjusted

    ranked = rank_candidates([best[item_id] for item_id in order])
    ranked = ranked[:max(config.max_candidates, 0)]

    notes = []
    if not ranked:
        notes.append(f"{slot}: no suggestion.")
    logger.debug(f"Rerank {slot}: in={len(candidates)} out={len(ranked)}")
    return ranked, notes
