"""
Catalog entries and the built-in default catalog.

The real catalog comes from an external provider; this module only defines
the shape it must take (ItemMeta) and a small fallback so the index is never
empty on a fresh install.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .features import EMBED_DIM, l2_normalize

logger = logging.getLogger(__name__)


@dataclass
class ItemMeta:
    id: int
    label: str
    slot: str
    set_id: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    palette: List[str] = field(default_factory=list)
    thumbnail: Optional[str] = None
    embedding: Optional[List[float]] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ItemMeta":
        return cls(
            id=int(data["id"]),
            label=data.get("label") or str(data["id"]),
            slot=data["slot"],
            set_id=data.get("setId", data.get("set_id")),
            tags=list(data.get("tags") or []),
            palette=list(data.get("palette") or []),
            thumbnail=data.get("thumbnail") or data.get("thumb"),
            embedding=data.get("embedding"),
        )


def text_embedding(text: str, dim: int = EMBED_DIM) -> np.ndarray:
    """Deterministic embedding folded from the characters of ``text``."""
    vector = np.zeros(dim, dtype=np.float32)
    for i, char in enumerate(text):
        vector[i % dim] += (ord(char) % 64) / 64.0
    return l2_normalize(vector)


def group_by_slot(items: List[ItemMeta]) -> Dict[str, List[ItemMeta]]:
    grouped: Dict[str, List[ItemMeta]] = {}
    for item in items:
        grouped.setdefault(item.slot, []).append(item)
    return grouped


def load_catalog(path: str) -> Dict[str, List[ItemMeta]]:
    """
    Read a catalog snapshot from JSON.

    Accepts either a flat list of entries (each with a ``slot`` field) or a
    mapping of slot → entries. Entries without an id or slot are skipped.

    Raises:
        OSError: if the file cannot be read.
        ValueError: if the content is not valid JSON.
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if isinstance(raw, dict):
        entries = []
        for slot, items in raw.items():
            for item in items or []:
                entries.append({"slot": slot, **item})
    else:
        entries = list(raw)

    items = []
    for entry in entries:
        if not entry.get("id") or not entry.get("slot"):
            logger.warning(f"Skipping catalog entry without id/slot: {entry!r}")
            continue
        items.append(ItemMeta.from_dict(entry))
    return group_by_slot(items)


DEFAULT_CATALOG: Dict[str, List[ItemMeta]] = {
    "coiffe": [
        ItemMeta(12424, "Coiffe Boréale", "coiffe", 502,
                 palette=["#E8C380", "#4C6074", "#2A1E10"]),
        ItemMeta(11011, "Masque du Kami", "coiffe", 351,
                 palette=["#F6E3C3", "#6D3829", "#B58B52"]),
        ItemMeta(10098, "Coiffe du Meulou", "coiffe", 101,
                 palette=["#9C4E3F", "#C9B497", "#2F1B17"]),
    ],
    "cape": [
        ItemMeta(15015, "Cape Boréale", "cape", 502,
                 palette=["#E1C082", "#395268", "#1B1F24"]),
        ItemMeta(13912, "Cape de Korbax", "cape", 351,
                 palette=["#F9E5CB", "#67302A", "#8F6C45"]),
        ItemMeta(11020, "Cape du Meulou", "cape", 101,
                 palette=["#9A4F3F", "#CAB69A", "#2D1914"]),
    ],
    "bouclier": [
        ItemMeta(20080, "Bouclier Ventaille", "bouclier", 810,
                 palette=["#F6D8A5", "#5A3F2F", "#222220"]),
        ItemMeta(20145, "Bouclier de l'Aurore Pourpre", "bouclier", 351,
                 palette=["#F2C9C3", "#4D2A26", "#8B4A41"]),
        ItemMeta(20002, "Bouclier du Meulou", "bouclier", 101,
                 palette=["#A25442", "#D8C5A8", "#311A14"]),
    ],
    "familier": [
        ItemMeta(30011, "Dragoune Dorée", "familier",
                 palette=["#F0C75E", "#593514", "#8D531F"]),
        ItemMeta(30045, "Minifoux", "familier",
                 palette=["#F8E9CD", "#543B27", "#A57852"]),
        ItemMeta(30089, "Chacha Angora", "familier",
                 palette=["#F0E4D2", "#5A4A42", "#1C1713"]),
    ],
}
