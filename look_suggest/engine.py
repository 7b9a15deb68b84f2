"""
Slot suggestion engine.

Orchestrates the per-slot pipeline:
    1. Normalize the input onto a square canvas + foreground mask
    2. Locate each slot's ROI and grade its visibility
    3. Item mode on visible slots, color mode as the fallback
    4. Cross-slot set synergy, then rerank and cap each slot

Slots are independent, so each one runs as its own task on a worker
thread and the results are joined before reranking.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional

import numpy as np

from .color_mode import color_mode_suggest
from .colors import extract_palette, palette_from_hex
from .config import SuggestionConfig
from .features import FeatureExtractor, PixelFeatureExtractor
from .index import ItemIndex
from .item_mode import TemplateFn, item_mode_suggest
from .models import BoundingBox, DofusPalette, ModeResult, SuggestionOutput
from .preprocessing import ImageInput, crop, locate_slots, normalize_input
from .rerank import SetRules, rerank_and_constrain

logger = logging.getLogger(__name__)

# Foreground samples (at stride 4) a patch needs before it gets its own palette
MIN_SLOT_PALETTE_PIXELS = 48


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class SuggestionEngine:
    """
    Per-slot item suggestion engine.

    Holds the item index and feature extractor, then accepts character
    images (or bare palettes) and returns ranked candidates per slot.
    """

    def __init__(self,
                 config: Optional[SuggestionConfig] = None,
                 extractor: Optional[FeatureExtractor] = None,
                 index: Optional[ItemIndex] = None,
                 template_fn: Optional[TemplateFn] = None):
        """
        Set up the engine and load the item index.

        Args:
            config: Pipeline configuration. Defaults to SuggestionConfig.from_env().
            extractor: Feature extractor backend. Must match the index's
                embedding length.
            index: Item index. Built from config when omitted; loads the
                persisted index or falls back to the default catalog.
            template_fn: Override for candidate reference-patch rendering.
        """
        self.config = config or SuggestionConfig.from_env()
        self.extractor = extractor or PixelFeatureExtractor()
        self.index = index or ItemIndex(self.config, self.extractor)
        self.template_fn = template_fn

        self.index.ensure_loaded()
        logger.info(
            f"Suggestion engine ready: slots={list(self.config.slots)}, "
            f"{self.extractor.dim}d embeddings"
        )

    def _slot_palette(self, canvas: np.ndarray, mask: np.ndarray,
                      box: BoundingBox) -> Optional[DofusPalette]:
        return extract_palette(crop(canvas, box), crop(mask, box),
                               min_pixels=MIN_SLOT_PALETTE_PIXELS)

    def _match_slot(self,
                    slot: str,
                    patch: Optional[np.ndarray],
                    visibility: Optional[str],
                    target: DofusPalette) -> ModeResult:
        """Run the item → color decision for one slot."""
        notes = []

        if visibility == "low":
            notes.append(f"{slot}: low visibility, item mode skipped.")
        elif self.config.enable_item_mode and patch is not None:
            item = item_mode_suggest(slot, patch, self.index, self.extractor,
                                     self.config, template_fn=self.template_fn)
            notes.extend(item.notes)
            if item.candidates:
                return ModeResult(item.candidates, item.confidence, notes)

        color = color_mode_suggest(slot, patch, target, self.index,
                                   self.extractor, self.config)
        notes.extend(color.notes)
        return ModeResult(color.candidates, color.confidence, notes)

    async def _run_slots(self, jobs: Dict[str, tuple]) -> Dict[str, ModeResult]:
        slots = list(jobs)
        results = await asyncio.gather(*(
            asyncio.to_thread(self._match_slot, slot, *jobs[slot])
            for slot in slots
        ))
        return dict(zip(slots, results))

    def _finalize(self,
                  palette: DofusPalette,
                  results: Dict[str, ModeResult],
                  visibility: Dict[str, str],
                  rules: SetRules,
                  notes: List[str]) -> SuggestionOutput:
        rules = rules.with_preferred(shared_set_ids(results))

        slots = {}
        confidence = {}
        for slot in self.config.slots:
            result = results[slot]
            notes.extend(result.notes)

            ranked, rerank_notes = rerank_and_constrain(
                slot, result.candidates, rules, self.config)
            notes.extend(rerank_notes)

            slots[slot] = ranked
            confidence[slot] = result.confidence if ranked else 0.0
            if ranked and confidence[slot] < self.config.low_confidence:
                notes.append(f"{slot}: low confidence ({confidence[slot]:.2f}).")

        return SuggestionOutput(
            palette=palette,
            slots=slots,
            confidence=confidence,
            visibility=visibility,
            notes=notes,
        )

    def _prepare(self, image: ImageInput, timings: Dict[str, float]):
        """Decode, locate slots and extract palettes; runs off the event loop."""
        stage = time.perf_counter()
        canvas, mask = normalize_input(image, self.config.canvas_size)
        timings["normalize"] = _elapsed_ms(stage)

        stage = time.perf_counter()
        boxes, visibility = locate_slots(canvas, mask, self.config)
        timings["locate"] = _elapsed_ms(stage)

        stage = time.perf_counter()
        palette = extract_palette(canvas, mask) or palette_from_hex([])
        jobs = {}
        for slot in self.config.slots:
            box = boxes[slot]
            target = self._slot_palette(canvas, mask, box) or palette
            jobs[slot] = (crop(canvas, box), visibility[slot], target)
        timings["palette"] = _elapsed_ms(stage)
        return palette, visibility, jobs

    async def suggest(self,
                      image: ImageInput,
                      rules: Optional[SetRules] = None,
                      debug: bool = False) -> SuggestionOutput:
        """
        Suggest items for every configured slot from a character image.

        Args:
            image: Encoded bytes, ``data:`` URL, base64 string or numpy image.
            rules: Excluded sets, preferred sets and hinted item ids.
            debug: Attach per-stage timings (milliseconds) to the output.

        Returns:
            SuggestionOutput with one ranked list per slot.

        Raises:
            TypeError: If ``image`` is of an unsupported Python type.
        """
        rules = rules or SetRules()
        timings = {}
        started = time.perf_counter()

        palette, visibility, jobs = await asyncio.to_thread(
            self._prepare, image, timings)

        stage = time.perf_counter()
        results = await self._run_slots(jobs)
        timings["match"] = _elapsed_ms(stage)

        stage = time.perf_counter()
        output = self._finalize(palette, results, visibility, rules, [])
        timings["rerank"] = _elapsed_ms(stage)
        timings["total"] = _elapsed_ms(started)

        logger.info(
            "Suggestion complete: "
            + ", ".join(f"{s}={len(c)}" for s, c in output.slots.items())
            + f" in {timings['total']}ms"
        )

        if debug:
            output.timings = timings
        return output

    async def suggest_from_palette(self,
                                   colors: Iterable[str],
                                   rules: Optional[SetRules] = None,
                                   debug: bool = False) -> SuggestionOutput:
        """
        Suggest items from user-chosen colors only.

        Invalid hex entries are ignored; with no valid entry the neutral
        fallback color is used. Every slot runs color mode with a neutral
        edge term, and all slots report "low" visibility.
        """
        rules = rules or SetRules()
        started = time.perf_counter()

        palette = palette_from_hex(colors)
        visibility = {slot: "low" for slot in self.config.slots}
        jobs = {slot: (None, None, palette) for slot in self.config.slots}

        results = await self._run_slots(jobs)
        output = self._finalize(palette, results, visibility, rules,
                                ["palette-only request, item mode skipped."])
        if debug:
            output.timings = {"total": _elapsed_ms(started)}
        return output

    def suggest_sync(self, image: ImageInput,
                     rules: Optional[SetRules] = None,
                     debug: bool = False) -> SuggestionOutput:
        """Blocking wrapper around suggest() for callers without a loop."""
        return asyncio.run(self.suggest(image, rules=rules, debug=debug))


def shared_set_ids(results: Dict[str, ModeResult]) -> List[int]:
    """Set ids present among the candidates of two or more slots."""
    counts = Counter()
    for result in results.values():
        counts.update({c.set_id for c in result.candidates if c.set_id is not None})
    return sorted(set_id for set_id, n in counts.items() if n >= 2)
