"""
Data model shared by the suggestion pipeline.

Rasters are plain numpy arrays (H×W×4 uint8 RGBA, H×W uint8 masks) and are
not wrapped here. Everything else that crosses a module boundary or ends up
in a SuggestionOutput is a dataclass with a JSON-friendly to_dict().
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, NamedTuple, Optional, Union


class Lab(NamedTuple):
    L: float
    a: float
    b: float


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    w: int
    h: int


@dataclass(frozen=True)
class DofusPalette:
    primary: str
    secondary: str
    tertiary: str

    def colors(self) -> List[str]:
        return [self.primary, self.secondary, self.tertiary]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CandidateRef:
    """One catalog entry as stored in the item index."""
    item_id: int
    slot: str
    label: str
    embedding: List[float]
    set_id: Optional[int] = None
    palette: List[str] = field(default_factory=list)
    thumbnail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "slot": self.slot,
            "label": self.label,
            "embedding": [float(v) for v in self.embedding],
            "setId": self.set_id,
            "palette": list(self.palette),
            "thumbnail": self.thumbnail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateRef":
        return cls(
            item_id=int(data["itemId"]),
            slot=data["slot"],
            label=data.get("label", str(data["itemId"])),
            embedding=[float(v) for v in data.get("embedding") or []],
            set_id=data.get("setId"),
            palette=list(data.get("palette") or []),
            thumbnail=data.get("thumbnail"),
        )


@dataclass
class ItemReasons:
    clip: float
    orb: float
    ssim: float
    chamfer: float
    pose_aligned: bool = True
    delta_e: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "clip": self.clip, "orb": self.orb, "ssim": self.ssim,
            "chamfer": self.chamfer, "poseAligned": self.pose_aligned,
            "deltaE": self.delta_e,
        }


@dataclass
class ColorReasons:
    color_score: float
    ssim_edges: float
    delta_e: float

    def to_dict(self) -> dict:
        return {
            "colorScore": self.color_score,
            "ssimEdges": self.ssim_edges,
            "deltaE": self.delta_e,
        }


Reasons = Union[ItemReasons, ColorReasons]


@dataclass
class Candidate:
    """A ranked suggestion for one slot.

    ``mode`` tells which reasons variant is attached: "item" carries
    ItemReasons, "color" carries ColorReasons.
    """
    item_id: int
    label: str
    score: float
    mode: str
    verified: bool
    reasons: Reasons
    set_id: Optional[int] = None
    thumbnail: Optional[str] = None
    bonus: float = 0.0

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "label": self.label,
            "score": self.score,
            "mode": self.mode,
            "verified": self.verified,
            "reasons": self.reasons.to_dict(),
            "setId": self.set_id,
            "thumbnail": self.thumbnail,
            "bonus": self.bonus,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Candidate":
        raw = data.get("reasons") or {}
        if data["mode"] == "item":
            reasons = ItemReasons(
                clip=raw.get("clip", 0.0), orb=raw.get("orb", 0.0),
                ssim=raw.get("ssim", 0.0), chamfer=raw.get("chamfer", 1.0),
                pose_aligned=raw.get("poseAligned", False),
                delta_e=raw.get("deltaE"),
            )
        else:
            reasons = ColorReasons(
                color_score=raw.get("colorScore", 0.0),
                ssim_edges=raw.get("ssimEdges", 0.0),
                delta_e=raw.get("deltaE", 0.0),
            )
        return cls(
            item_id=int(data["itemId"]),
            label=data["label"],
            score=float(data["score"]),
            mode=data["mode"],
            verified=bool(data["verified"]),
            reasons=reasons,
            set_id=data.get("setId"),
            thumbnail=data.get("thumbnail"),
            bonus=float(data.get("bonus", 0.0)),
        )


@dataclass
class SuggestionOutput:
    palette: DofusPalette
    slots: Dict[str, List[Candidate]]
    confidence: Dict[str, float]
    visibility: Dict[str, str]
    notes: List[str] = field(default_factory=list)
    timings: Optional[Dict[str, float]] = None

    def to_dict(self) -> dict:
        data = {
            "palette": self.palette.to_dict(),
            "slots": {s: [c.to_dict() for c in cands]
                      for s, cands in self.slots.items()},
            "confidence": dict(self.confidence),
            "visibility": dict(self.visibility),
            "notes": list(self.notes),
        }
        if self.timings is not None:
            data["timings"] = dict(self.timings)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SuggestionOutput":
        return cls(
            palette=DofusPalette(**data["palette"]),
            slots={s: [Candidate.from_dict(c) for c in cands]
                   for s, cands in data["slots"].items()},
            confidence={s: float(v) for s, v in data["confidence"].items()},
            visibility=dict(data["visibility"]),
            notes=list(data.get("notes", [])),
            timings=data.get("timings"),
        )


class ModeResult(NamedTuple):
    """Output of one matcher for one slot."""
    candidates: List[Candidate]
    confidence: float
    notes: List[str]
