"""
Item mode: confirm that an actual catalog item is present in a slot patch.

Candidates come from the item index, are gated by the pose check, then must
clear the slot's embedding threshold, a 2-of-3 structural vote (orientation
match, edge SSIM, silhouette distance), a hard silhouette ceiling and the
final score threshold. Only candidates that survive every step are emitted,
all marked verified.
"""

import logging
from typing import Callable, Optional, Tuple

import numpy as np

from .config import SuggestionConfig
from .features import FeatureExtractor, cosine_similarity
from .index import ItemIndex
from .models import Candidate, CandidateRef, ItemReasons, ModeResult
from .scoring import compute_item_score, rank_candidates, structural_passes
from .templates import render_template

logger = logging.getLogger(__name__)

TemplateFn = Callable[[CandidateRef, Tuple[int, int]], np.ndarray]

# Metrics assigned when the pose gate fails
FLOOR_METRICS = (0.0, 0.0, 0.0, 1.0)  # clip, orb, ssim, chamfer


def item_mode_suggest(slot: str,
                      patch: np.ndarray,
                      index: ItemIndex,
                      extractor: FeatureExtractor,
                      config: SuggestionConfig,
                      template_fn: Optional[TemplateFn] = None) -> ModeResult:
    """
    Run item mode for one slot.

    Args:
        slot: Slot key.
        patch: RGBA crop of the slot's ROI.
        index: Item index to retrieve candidates from.
        extractor: Feature extractor (must match the index's embeddings).
        config: Pipeline configuration.
        template_fn: Produces a candidate's reference patch for a given
            (height, width). Defaults to render_template.

    Returns:
        ModeResult with verified candidates sorted by score. When nothing
        survives, confidence is 0 and a note records the fallback.
    """
    template_fn = template_fn or render_template
    thresholds = config.thresholds_for(slot)
    notes = []

    embedding = extractor.embed(patch)
    try:
        pool = index.query(slot, embedding, config.retrieval_k)
    except ValueError as e:
        logger.error(f"Item index query failed for {slot}: {e}")
        pool = []

    if not pool:
        notes.append(f"{slot}: no indexed candidates for item mode, "
                     f"falling back to color mode.")
        return ModeResult([], 0.0, notes)

    verified = []
    rejected_clip = 0
    rejected_structure = 0

    for ref in pool:
        template = template_fn(ref, patch.shape[:2])
        pose = extractor.pose_align(patch, template, config.pose_floor)

        if pose.ok:
            clip = cosine_similarity(embedding, ref.embedding)
            orb = extractor.orientation_match_ratio(pose.aligned_patch,
                                                    pose.aligned_template)
            ssim = extractor.edge_similarity(pose.aligned_patch,
                                             pose.aligned_template)
            chamfer = extractor.silhouette_distance(pose.aligned_patch,
                                                    pose.aligned_template)
        else:
            clip, orb, ssim, chamfer = FLOOR_METRICS

        if clip < thresholds.clip:
            rejected_clip += 1
            continue

        passes = structural_passes(orb, ssim, chamfer, thresholds.orb,
                                   thresholds.ssim, thresholds.chamfer)
        if config.require_2_of_3 and passes < 2:
            rejected_structure += 1
            continue

        if chamfer > config.chamfer_ceiling:
            rejected_structure += 1
            continue

        score = compute_item_score(clip, orb, ssim, chamfer, config.weights_item)
        if score < thresholds.final:
            continue

        verified.append(Candidate(
            item_id=ref.item_id,
            label=ref.label,
            score=score,
            mode="item",
            verified=True,
            reasons=ItemReasons(clip=clip, orb=orb, ssim=ssim, chamfer=chamfer,
                                pose_aligned=pose.ok),
            set_id=ref.set_id,
            thumbnail=ref.thumbnail,
        ))
        if len(verified) >= config.max_candidates:
            break

    logger.debug(
        f"Item mode {slot}: pool={len(pool)} verified={len(verified)} "
        f"clip_rejects={rejected_clip} structure_rejects={rejected_structure}"
    )

    if not verified:
        notes.append(f"{slot}: no catalog item confirmed, falling back to color mode.")
        return ModeResult([], 0.0, notes)

    verified = rank_candidates(verified)[:config.max_candidates]
    return ModeResult(verified, verified[0].score, notes)
