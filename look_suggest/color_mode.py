"""
Color mode: rank a slot's catalog purely by palette proximity.

Used when item mode confirms nothing or the slot is barely visible. Each
candidate's reference palette is compared to the target palette with
CIEDE2000; a residual embedding-similarity term breaks ties between items
of similar coloring. Results are never verified.
"""

import logging
from typing import Optional

import numpy as np

from .colors import average_palette_delta
from .config import SuggestionConfig
from .features import FeatureExtractor, cosine_similarity
from .index import ItemIndex
from .models import Candidate, ColorReasons, DofusPalette, ModeResult
from .scoring import compute_color_score, rank_candidates

logger = logging.getLogger(__name__)


def color_mode_suggest(slot: str,
                       patch: Optional[np.ndarray],
                       target: DofusPalette,
                       index: ItemIndex,
                       extractor: FeatureExtractor,
                       config: SuggestionConfig) -> ModeResult:
    """
    Run color mode for one slot.

    Args:
        slot: Slot key.
        patch: RGBA crop of the slot, or None for palette-only requests
            (the edge term is then neutral).
        target: Palette the candidates are compared against.
        index: Item index to retrieve candidates from.
        extractor: Feature extractor matching the index.
        config: Pipeline configuration.

    Returns:
        ModeResult with unverified candidates by descending score, capped
        to config.max_candidates.
    """
    if not config.enable_color_mode:
        return ModeResult([], 0.0, [f"{slot}: color mode disabled."])

    if patch is not None:
        embedding = extractor.embed(patch)
    else:
        embedding = np.zeros(extractor.dim, dtype=np.float32)

    try:
        pool = index.query(slot, embedding, config.color_pick_k)
    except ValueError as e:
        logger.error(f"Item index query failed for {slot}: {e}")
        pool = []

    if not pool:
        return ModeResult([], 0.0, [f"{slot}: no indexed candidates for color mode."])

    suggestions = []
    for ref in pool:
        delta_e = average_palette_delta(ref.palette, target, config.max_delta_e)
        edge_term = (cosine_similarity(embedding, ref.embedding) + 1) / 2
        scored = compute_color_score(delta_e, edge_term, config.weights_color,
                                     config.max_delta_e)
        suggestions.append(Candidate(
            item_id=ref.item_id,
            label=ref.label,
            score=scored["score"],
            mode="color",
            verified=False,
            reasons=ColorReasons(color_score=scored["color_score"],
                                 ssim_edges=scored["edge_score"],
                                 delta_e=delta_e),
            set_id=ref.set_id,
            thumbnail=ref.thumbnail,
        ))

    ranked = rank_candidates(suggestions)[:config.max_candidates]
    logger.debug(f"Color mode {slot}: pool={len(pool)} kept={len(ranked)}")
    return ModeResult(ranked, ranked[0].score, [])
