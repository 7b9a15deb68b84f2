"""
Configuration for the slot suggestion pipeline.

Slot ordering, ROI rectangles, structural thresholds, scoring weights and
cache bounds live here. Scalar knobs can be overridden through environment
variables; components never read these globals directly but receive a
SuggestionConfig instance at construction.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass(frozen=True)
class SlotThresholds:
    clip: float
    orb: float
    ssim: float
    chamfer: float
    final: float


@dataclass(frozen=True)
class Roi:
    """Region of interest as fractions of the canvas size."""
    x: float
    y: float
    w: float
    h: float


KNOWN_SLOTS = ("coiffe", "cape", "bouclier", "familier",
               "epauliere", "costume", "ailes")

# Slots evaluated by default; the others need a catalog that carries them.
DEFAULT_SLOTS = ("coiffe", "cape", "bouclier", "familier")

ROI = {
    "coiffe":    Roi(0.34, 0.02, 0.32, 0.22),
    "cape":      Roi(0.28, 0.20, 0.44, 0.50),
    "bouclier":  Roi(0.60, 0.36, 0.22, 0.28),
    "familier":  Roi(0.08, 0.58, 0.28, 0.30),
    "epauliere": Roi(0.32, 0.18, 0.36, 0.28),
    "costume":   Roi(0.30, 0.32, 0.42, 0.42),
    "ailes":     Roi(0.18, 0.20, 0.64, 0.54),
}

ITEM_THRESHOLDS = {
    "coiffe":    SlotThresholds(clip=0.80, orb=0.35, ssim=0.70, chamfer=0.18, final=0.78),
    "cape":      SlotThresholds(clip=0.78, orb=0.32, ssim=0.68, chamfer=0.20, final=0.76),
    "bouclier":  SlotThresholds(clip=0.80, orb=0.38, ssim=0.70, chamfer=0.16, final=0.80),
    "familier":  SlotThresholds(clip=0.76, orb=0.30, ssim=0.66, chamfer=0.22, final=0.74),
    "epauliere": SlotThresholds(clip=0.78, orb=0.34, ssim=0.68, chamfer=0.20, final=0.76),
    "costume":   SlotThresholds(clip=0.79, orb=0.33, ssim=0.69, chamfer=0.19, final=0.77),
    "ailes":     SlotThresholds(clip=0.77, orb=0.32, ssim=0.67, chamfer=0.21, final=0.75),
}

# Hard chamfer ceiling applied after the 2-of-3 vote. A candidate can pass
# the vote on orb + ssim alone, but never with a silhouette this far off.
CHAMFER_CEILING = float(os.environ.get("CHAMFER_CEILING", "0.45"))

# Retrieval breadth for each mode
RETRIEVAL_K = int(os.environ.get("RETRIEVAL_K", "80"))
COLOR_PICK_K = int(os.environ.get("COLOR_PICK_K", "100"))

# Item-mode weights, must sum to 1.0
WEIGHTS_ITEM = {
    "clip":  float(os.environ.get("SCORE_CLIP_W", "0.35")),
    "orb":   float(os.environ.get("SCORE_ORB_W", "0.25")),
    "ssim":  float(os.environ.get("SCORE_SSIM_W", "0.20")),
    "shape": float(os.environ.get("SCORE_SHAPE_W", "0.20")),
}

# Color-mode weights, color dominant, must sum to 1.0
WEIGHTS_COLOR = {
    "color": float(os.environ.get("SCORE_COLOR_W", "0.8")),
    "edges": float(os.environ.get("SCORE_EDGES_W", "0.2")),
}

MAX_CANDIDATES = int(os.environ.get("MAX_CANDIDATES", "5"))
CACHE_SIZE = int(os.environ.get("QUERY_CACHE_SIZE", "32"))

# Visibility gate per ROI
MIN_COVERAGE = float(os.environ.get("VIS_MIN_COVERAGE", "0.15"))
MIN_EDGE_DENSITY = float(os.environ.get("VIS_MIN_EDGE_DENSITY", "0.06"))

CANVAS_SIZE = int(os.environ.get("CANVAS_SIZE", "512"))

# Coarse embedding similarity required before structural metrics are trusted
POSE_FLOOR = float(os.environ.get("POSE_FLOOR", "0.35"))

REQUIRE_2_OF_3 = os.environ.get("REQUIRE_2_OF_3", "1") not in ("0", "false", "False")

# Set synergy bonus: base, cap, and the deltaE under which it doubles
SET_BONUS = float(os.environ.get("SET_BONUS", "0.03"))
SET_BONUS_MAX = float(os.environ.get("SET_BONUS_MAX", "0.05"))
SET_TIGHT_DELTA_E = float(os.environ.get("SET_TIGHT_DELTA_E", "15.0"))
HINT_BOOST = float(os.environ.get("HINT_BOOST", "0.05"))

LOW_CONFIDENCE_THRESHOLD = float(os.environ.get("LOW_CONFIDENCE", "0.5"))

# Penalty delta for candidates without a reference palette
MAX_DELTA_E = 100.0

INDEX_PATH = os.environ.get("ITEM_INDEX_PATH",
                            os.path.join(".cache", "item-index.json"))


@dataclass(frozen=True)
class SuggestionConfig:
    """Static configuration injected into every pipeline component."""

    slots: Tuple[str, ...] = DEFAULT_SLOTS
    roi: Dict[str, Roi] = field(default_factory=lambda: dict(ROI))
    thresholds: Dict[str, SlotThresholds] = field(
        default_factory=lambda: dict(ITEM_THRESHOLDS))
    chamfer_ceiling: float = CHAMFER_CEILING
    retrieval_k: int = RETRIEVAL_K
    color_pick_k: int = COLOR_PICK_K
    weights_item: Dict[str, float] = field(default_factory=lambda: dict(WEIGHTS_ITEM))
    weights_color: Dict[str, float] = field(default_factory=lambda: dict(WEIGHTS_COLOR))
    max_candidates: int = MAX_CANDIDATES
    cache_size: int = CACHE_SIZE
    min_coverage: float = MIN_COVERAGE
    min_edge_density: float = MIN_EDGE_DENSITY
    canvas_size: int = CANVAS_SIZE
    pose_floor: float = POSE_FLOOR
    require_2_of_3: bool = REQUIRE_2_OF_3
    set_bonus: float = SET_BONUS
    set_bonus_max: float = SET_BONUS_MAX
    set_tight_delta_e: float = SET_TIGHT_DELTA_E
    hint_boost: float = HINT_BOOST
    low_confidence: float = LOW_CONFIDENCE_THRESHOLD
    max_delta_e: float = MAX_DELTA_E
    index_path: str = INDEX_PATH
    enable_item_mode: bool = True
    enable_color_mode: bool = True

    @classmethod
    def from_env(cls) -> "SuggestionConfig":
        """Build a config from the current environment.

        Module-level defaults are read at import time, so this re-reads the
        variables that callers are most likely to change at runtime.
        """
        slots = os.environ.get("SUGGEST_SLOTS")
        kwargs = {}
        if slots:
            kwargs["slots"] = tuple(
                s.strip() for s in slots.split(",") if s.strip() in KNOWN_SLOTS
            )
        if "ITEM_INDEX_PATH" in os.environ:
            kwargs["index_path"] = os.environ["ITEM_INDEX_PATH"]
        if "MAX_CANDIDATES" in os.environ:
            kwargs["max_candidates"] = int(os.environ["MAX_CANDIDATES"])
        if "QUERY_CACHE_SIZE" in os.environ:
            kwargs["cache_size"] = int(os.environ["QUERY_CACHE_SIZE"])
        return cls(**kwargs)

    def thresholds_for(self, slot: str) -> SlotThresholds:
        return self.thresholds.get(slot, ITEM_THRESHOLDS["coiffe"])
