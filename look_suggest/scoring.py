"""
Score computation and ranking shared by both matchers and the reranker.

Item mode combines four structural signals (embedding similarity,
orientation match, edge SSIM and silhouette shape) into one score; color
mode blends perceptual color proximity with a residual embedding term.
Every score leaving this module is clamped to [0, 1].
"""

import math
import logging
from typing import Dict, List

from .models import Candidate

logger = logging.getLogger(__name__)


def clamp_score(score: float) -> float:
    """Clamp to [0, 1]; non-finite values become 0."""
    if score is None or not math.isfinite(score):
        return 0.0
    return max(0.0, min(1.0, float(score)))


def structural_passes(orb: float, ssim: float, chamfer: float,
                      orb_min: float, ssim_min: float,
                      chamfer_max: float) -> int:
    """How many of the three structural checks hold."""
    return sum((orb >= orb_min, ssim >= ssim_min, chamfer <= chamfer_max))


def compute_item_score(clip: float, orb: float, ssim: float, chamfer: float,
                       weights: Dict[str, float]) -> float:
    """
    Weighted item-mode score.

    The shape term averages silhouette closeness (1 - chamfer) with edge
    SSIM so a candidate needs both a matching outline and matching interior
    edges to score well on it.
    """
    shape = (max(0.0, 1.0 - chamfer) + ssim) / 2
    score = (
        weights["clip"] * clip
        + weights["orb"] * orb
        + weights["ssim"] * ssim
        + weights["shape"] * shape
    )
    return clamp_score(score)


def compute_color_score(delta_e: float, edge_score: float,
                        weights: Dict[str, float],
                        max_delta_e: float = 100.0) -> Dict[str, float]:
    """
    Color-mode score from a palette distance and an edge term.

    Returns:
        Dict with 'color_score', 'edge_score' and the combined 'score'.
    """
    color_score = clamp_score(1.0 - delta_e / max_delta_e)
    edge_score = clamp_score(edge_score)
    score = weights["color"] * color_score + weights["edges"] * edge_score
    return {
        "color_score": color_score,
        "edge_score": edge_score,
        "score": clamp_score(score),
    }


def rank_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """
    Sort verified candidates first, then by descending score.

    The sort is stable, so equal candidates keep their incoming order.
    """
    return sorted(candidates, key=lambda c: (not c.verified, -c.score))
