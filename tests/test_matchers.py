"""Tests for the item-mode and color-mode matchers."""

from dataclasses import replace

import numpy as np
import pytest

from look_suggest.catalog import ItemMeta
from look_suggest.color_mode import color_mode_suggest
from look_suggest.colors import palette_from_hex
from look_suggest.features import FeatureExtractor, embed
from look_suggest.index import ItemIndex
from look_suggest.item_mode import item_mode_suggest
from look_suggest.models import ColorReasons, ItemReasons
from look_suggest.scoring import compute_item_score, structural_passes


def _same_template(patch):
    return lambda ref, shape: patch


def _single_item_index(config, patch):
    catalog = {"coiffe": [ItemMeta(100, "Hat", "coiffe",
                                   embedding=embed(patch).tolist())]}
    return ItemIndex(config).build(catalog)


class FixedMetricsExtractor(FeatureExtractor):
    """Real embeddings, fixed structural metrics."""

    def __init__(self, orb, ssim, chamfer):
        self.orb = orb
        self.ssim = ssim
        self.chamfer = chamfer

    def embed(self, patch):
        return embed(patch)

    def edge_similarity(self, a, b):
        return self.ssim

    def orientation_match_ratio(self, a, b):
        return self.orb

    def silhouette_distance(self, a, b):
        return self.chamfer


class TestItemMode:
    """Tests for structural item confirmation."""

    def test_matching_item_is_verified(self, config, extractor, textured_patch):
        catalog = {"coiffe": [ItemMeta(100, "Checker Hat", "coiffe", 7,
                                       embedding=embed(textured_patch).tolist())]}
        index = ItemIndex(config).build(catalog)

        result = item_mode_suggest("coiffe", textured_patch, index, extractor, config,
                                   template_fn=_same_template(textured_patch))

        assert len(result.candidates) == 1
        candidate = result.candidates[0]
        assert candidate.item_id == 100
        assert candidate.verified
        assert candidate.mode == "item"
        assert candidate.set_id == 7
        assert isinstance(candidate.reasons, ItemReasons)
        assert candidate.reasons.clip == pytest.approx(1.0, abs=1e-4)
        assert candidate.reasons.chamfer == pytest.approx(0.0, abs=1e-4)
        assert 0.0 <= candidate.score <= 1.0
        assert result.confidence == candidate.score

    def test_low_clip_rejected_even_with_perfect_structure(self, config, extractor,
                                                          textured_patch):
        # Template is identical to the patch, so orb/ssim/chamfer all pass,
        # but the indexed embedding points the opposite way.
        opposite = (-embed(textured_patch)).tolist()
        catalog = {"coiffe": [ItemMeta(100, "Inverted", "coiffe", embedding=opposite)]}
        index = ItemIndex(config).build(catalog)

        result = item_mode_suggest("coiffe", textured_patch, index, extractor, config,
                                   template_fn=_same_template(textured_patch))

        assert result.candidates == []
        assert result.confidence == 0.0
        assert any("coiffe" in note for note in result.notes)

    def test_pose_gate_failure_excludes(self, config, extractor, textured_patch,
                                        transparent_patch):
        catalog = {"coiffe": [ItemMeta(100, "Hat", "coiffe",
                                       embedding=embed(textured_patch).tolist())]}
        index = ItemIndex(config).build(catalog)

        result = item_mode_suggest("coiffe", textured_patch, index, extractor, config,
                                   template_fn=_same_template(transparent_patch))
        assert result.candidates == []

    def test_empty_catalog(self, config, extractor, textured_patch):
        index = ItemIndex(config).build({"coiffe": []})
        result = item_mode_suggest("coiffe", textured_patch, index, extractor, config)
        assert result.candidates == []
        assert result.confidence == 0.0
        assert result.notes and "coiffe" in result.notes[0]

    def test_capped_to_max_candidates(self, config, extractor, textured_patch):
        vector = embed(textured_patch).tolist()
        catalog = {"cape": [ItemMeta(i, f"Cape {i}", "cape", embedding=vector)
                            for i in range(1, 9)]}
        small = replace(config, max_candidates=3)
        index = ItemIndex(small).build(catalog)

        result = item_mode_suggest("cape", textured_patch, index, extractor, small,
                                   template_fn=_same_template(textured_patch))
        assert len(result.candidates) == 3
        assert all(c.verified for c in result.candidates)

    def test_two_of_three_vote(self, config, textured_patch):
        index = _single_item_index(config, textured_patch)
        # orb passes, ssim and chamfer fail: one vote out of three
        extractor = FixedMetricsExtractor(orb=0.9, ssim=0.5, chamfer=0.3)

        strict = item_mode_suggest("coiffe", textured_patch, index, extractor, config,
                                   template_fn=_same_template(textured_patch))
        assert strict.candidates == []

        relaxed_config = replace(config, require_2_of_3=False)
        relaxed = item_mode_suggest("coiffe", textured_patch, index, extractor,
                                    relaxed_config,
                                    template_fn=_same_template(textured_patch))
        assert [c.item_id for c in relaxed.candidates] == [100]

    def test_chamfer_ceiling_overrides_vote(self, config, textured_patch):
        index = _single_item_index(config, textured_patch)
        # orb and ssim pass the vote, but the silhouette is beyond the ceiling
        extractor = FixedMetricsExtractor(orb=0.9, ssim=0.9, chamfer=0.5)
        result = item_mode_suggest("coiffe", textured_patch, index, extractor, config,
                                   template_fn=_same_template(textured_patch))
        assert result.candidates == []


class TestItemScore:
    """Tests for the weighted item score."""

    def test_perfect_metrics(self, config):
        assert compute_item_score(1.0, 1.0, 1.0, 0.0, config.weights_item) == pytest.approx(1.0)

    def test_floor_metrics(self, config):
        assert compute_item_score(0.0, 0.0, 0.0, 1.0, config.weights_item) == 0.0

    def test_clamped(self, config):
        assert compute_item_score(5.0, 5.0, 5.0, -3.0, config.weights_item) == 1.0

    def test_structural_vote_counts(self):
        assert structural_passes(0.5, 0.8, 0.1, 0.35, 0.7, 0.18) == 3
        assert structural_passes(0.1, 0.8, 0.1, 0.35, 0.7, 0.18) == 2
        assert structural_passes(0.1, 0.1, 0.5, 0.35, 0.7, 0.18) == 0


class TestColorMode:
    """Tests for palette-based fallback ranking."""

    def test_closest_palette_ranks_first(self, config, extractor, palette_catalog):
        index = ItemIndex(config).build(palette_catalog)
        target = palette_from_hex(["#C0392B"])

        result = color_mode_suggest("coiffe", None, target, index, extractor, config)

        assert [c.item_id for c in result.candidates] == [1, 2, 3]
        assert result.confidence == result.candidates[0].score

    def test_candidates_unverified_color_mode(self, config, extractor, palette_catalog):
        index = ItemIndex(config).build(palette_catalog)
        result = color_mode_suggest("coiffe", None, palette_from_hex(["#2E86C1"]),
                                    index, extractor, config)
        for candidate in result.candidates:
            assert not candidate.verified
            assert candidate.mode == "color"
            assert isinstance(candidate.reasons, ColorReasons)
            assert 0.0 <= candidate.score <= 1.0

    def test_no_patch_gives_neutral_edge_term(self, config, extractor, palette_catalog):
        index = ItemIndex(config).build(palette_catalog)
        result = color_mode_suggest("coiffe", None, palette_from_hex(["#C0392B"]),
                                    index, extractor, config)
        exact = result.candidates[0]
        assert exact.reasons.ssim_edges == pytest.approx(0.5)
        assert exact.reasons.delta_e == pytest.approx(0.0, abs=1e-9)
        assert exact.score == pytest.approx(0.8 * 1.0 + 0.2 * 0.5)

    def test_missing_palette_gets_penalty(self, config, extractor, palette_catalog):
        index = ItemIndex(config).build(palette_catalog)
        result = color_mode_suggest("coiffe", None, palette_from_hex(["#C0392B"]),
                                    index, extractor, config)
        plain = [c for c in result.candidates if c.item_id == 3][0]
        assert plain.reasons.delta_e == config.max_delta_e
        assert plain.reasons.color_score == 0.0

    def test_with_patch(self, config, extractor, palette_catalog, textured_patch):
        index = ItemIndex(config).build(palette_catalog)
        result = color_mode_suggest("coiffe", textured_patch, palette_from_hex(["#C0392B"]),
                                    index, extractor, config)
        assert len(result.candidates) == 3
        assert all(0.0 <= c.reasons.ssim_edges <= 1.0 for c in result.candidates)

    def test_capped(self, config, extractor):
        catalog = {"cape": [ItemMeta(i, f"Cape {i}", "cape", palette=["#8D5524"])
                            for i in range(1, 12)]}
        index = ItemIndex(config).build(catalog)
        result = color_mode_suggest("cape", None, palette_from_hex(["#8D5524"]),
                                    index, extractor, config)
        assert len(result.candidates) == config.max_candidates

    def test_empty_catalog(self, config, extractor):
        index = ItemIndex(config).build({"cape": []})
        result = color_mode_suggest("cape", None, palette_from_hex(["#8D5524"]),
                                    index, extractor, config)
        assert result.candidates == []
        assert result.confidence == 0.0
        assert "cape" in result.notes[0]

    def test_disabled(self, config, extractor, palette_catalog):
        index = ItemIndex(config).build(palette_catalog)
        disabled = replace(config, enable_color_mode=False)
        result = color_mode_suggest("coiffe", None, palette_from_hex(["#C0392B"]),
                                    index, extractor, disabled)
        assert result.candidates == []

    def test_dimension_mismatch_absorbed(self, config, extractor, palette_catalog):
        class WideExtractor(type(extractor)):
            dim = 12

        index = ItemIndex(config).build(palette_catalog)
        result = color_mode_suggest("coiffe", None, palette_from_hex(["#C0392B"]),
                                    index, WideExtractor(), config)
        assert result.candidates == []
        assert np.isfinite(result.confidence)
