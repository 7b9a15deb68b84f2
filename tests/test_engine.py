"""End-to-end tests for the suggestion engine."""

import asyncio
import json
import threading

import pytest

from look_suggest import engine as engine_module
from look_suggest.catalog import DEFAULT_CATALOG
from look_suggest.colors import FALLBACK_COLOR
from look_suggest.engine import SuggestionEngine, shared_set_ids
from look_suggest.index import ItemIndex
from look_suggest.index_builder import build_index_from_file
from look_suggest.models import (
    Candidate, ColorReasons, ModeResult, SuggestionOutput,
)
from look_suggest.rerank import SetRules


@pytest.fixture
def engine(config):
    return SuggestionEngine(config=config)


def run(coro):
    return asyncio.run(coro)


def assert_well_formed(output, config):
    for slot, candidates in output.slots.items():
        assert len(candidates) <= config.max_candidates
        ids = [c.item_id for c in candidates]
        assert len(ids) == len(set(ids))
        flags = [c.verified for c in candidates]
        assert flags == sorted(flags, reverse=True)
        for candidate in candidates:
            assert 0.0 <= candidate.score <= 1.0
        assert 0.0 <= output.confidence[slot] <= 1.0


class TestSuggest:
    """Tests for image-based suggestion."""

    def test_output_covers_configured_slots(self, engine, config, character_png):
        output = run(engine.suggest(character_png))
        assert list(output.slots) == list(config.slots)
        assert set(output.visibility) == set(config.slots)
        assert set(output.confidence) == set(config.slots)
        assert_well_formed(output, config)

    def test_transparent_image_all_low_visibility(self, engine, config, transparent_png):
        output = run(engine.suggest(transparent_png))
        for slot in config.slots:
            assert output.visibility[slot] == "low"
            assert any(note.startswith(f"{slot}: low visibility") for note in output.notes)
            assert all(not c.verified for c in output.slots[slot])
            assert all(c.mode == "color" for c in output.slots[slot])
        assert output.palette.colors() == [FALLBACK_COLOR] * 3

    def test_low_visibility_skips_item_mode(self, engine, transparent_png, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("item mode must not run for low-visibility slots")

        monkeypatch.setattr(engine_module, "item_mode_suggest", fail)
        output = run(engine.suggest(transparent_png))
        assert all(v == "low" for v in output.visibility.values())

    def test_empty_catalog(self, config, character_png):
        index = ItemIndex(config).build({})
        engine = SuggestionEngine(config=config, index=index)
        output = run(engine.suggest(character_png))
        for slot in config.slots:
            assert output.slots[slot] == []
            assert output.confidence[slot] == 0.0
            assert f"{slot}: no suggestion." in output.notes

    def test_undecodable_input_still_answers(self, engine, config):
        output = run(engine.suggest(b"definitely not an image"))
        assert_well_formed(output, config)

    def test_deterministic(self, engine, character_png):
        first = run(engine.suggest(character_png)).to_dict()
        second = run(engine.suggest(character_png)).to_dict()
        assert first == second

    def test_unsupported_input_type(self, engine):
        with pytest.raises(TypeError):
            run(engine.suggest(42))

    def test_debug_timings(self, engine, character_png):
        plain = run(engine.suggest(character_png))
        debug = run(engine.suggest(character_png, debug=True))
        assert plain.timings is None
        assert {"normalize", "locate", "match", "rerank", "total"} <= set(debug.timings)

    def test_excluded_sets_respected(self, engine, config, transparent_png):
        excluded = {m.set_id for items in DEFAULT_CATALOG.values() for m in items
                    if m.set_id is not None}
        output = run(engine.suggest(transparent_png, rules=SetRules.create(exclude_sets=excluded)))
        for candidates in output.slots.values():
            assert all(c.set_id not in excluded for c in candidates)

    def test_sync_wrapper(self, engine, config, transparent_png):
        output = engine.suggest_sync(transparent_png)
        assert set(output.slots) == set(config.slots)

    def test_wide_opaque_image_palette_from_figure(self, engine, wide_figure_png):
        output = run(engine.suggest(wide_figure_png))
        assert output.palette.primary == "#C0392B"

    def test_preprocessing_runs_off_event_loop(self, engine, character_png, monkeypatch):
        threads = []
        original = engine_module.normalize_input

        def recording(image, size):
            threads.append(threading.current_thread())
            return original(image, size)

        monkeypatch.setattr(engine_module, "normalize_input", recording)
        run(engine.suggest(character_png))
        assert threads and threads[0] is not threading.main_thread()


class TestSuggestFromPalette:
    """Tests for the palette-only flow."""

    def test_palette_used_as_given(self, engine, config):
        output = run(engine.suggest_from_palette(["#c0392b", "2E86C1"]))
        assert output.palette.colors() == ["#C0392B", "#2E86C1", "#2E86C1"]
        assert all(v == "low" for v in output.visibility.values())
        assert_well_formed(output, config)

    def test_every_slot_gets_color_candidates(self, engine, config):
        output = run(engine.suggest_from_palette(["#E8C380"]))
        for slot in config.slots:
            assert output.slots[slot]
            assert all(c.mode == "color" and not c.verified for c in output.slots[slot])

    def test_invalid_colors_fall_back(self, engine):
        output = run(engine.suggest_from_palette(["not-a-color"]))
        assert output.palette.colors() == [FALLBACK_COLOR] * 3

    def test_closest_item_first(self, engine):
        # Exactly the palette of "Coiffe Boréale"
        output = run(engine.suggest_from_palette(["#E8C380", "#4C6074", "#2A1E10"]))
        assert output.slots["coiffe"][0].item_id == 12424


class TestCrossSlotSynergy:
    """Tests for set ids shared across slots."""

    def _result(self, *set_ids):
        candidates = [Candidate(item_id=i + 1, label="x", score=0.5, mode="color",
                                verified=False,
                                reasons=ColorReasons(0.5, 0.5, 40.0), set_id=s)
                      for i, s in enumerate(set_ids)]
        return ModeResult(candidates, 0.5, [])

    def test_shared_sets_found(self):
        results = {"coiffe": self._result(1, 2), "cape": self._result(2, 3),
                   "bouclier": self._result(3, None)}
        assert shared_set_ids(results) == [2, 3]

    def test_repeats_within_one_slot_do_not_count(self):
        results = {"coiffe": self._result(4, 4), "cape": self._result(5)}
        assert shared_set_ids(results) == []

    def test_palette_flow_rewards_shared_sets(self, engine):
        output = run(engine.suggest_from_palette(["#E8C380", "#4C6074", "#2A1E10"]))
        coiffe_top = output.slots["coiffe"][0]
        assert coiffe_top.set_id == 502
        assert coiffe_top.bonus > 0


class TestSerialization:
    """Tests for the JSON round trip."""

    def test_round_trip(self, engine, character_png):
        output = run(engine.suggest(character_png, debug=True))
        payload = json.loads(json.dumps(output.to_dict()))
        restored = SuggestionOutput.from_dict(payload)
        assert restored.to_dict() == payload

    def test_round_trip_palette_flow(self, engine):
        output = run(engine.suggest_from_palette(["#C0392B"]))
        payload = json.loads(json.dumps(output.to_dict()))
        assert SuggestionOutput.from_dict(payload) == output


class TestIndexBuilder:
    """Tests for building the index from a catalog snapshot."""

    def test_build_from_file(self, tmp_path, config):
        catalog_path = tmp_path / "catalog.json"
        catalog_path.write_text(json.dumps([
            {"id": 1, "label": "Hat", "slot": "coiffe", "setId": 3, "palette": ["#112233"]},
            {"id": 2, "label": "Cape", "slot": "cape"},
            {"id": 3, "label": "Mystery", "slot": "boots"},
        ]))
        output_path = tmp_path / "out" / "index.json"

        stats = build_index_from_file(str(catalog_path), config, str(output_path))

        assert stats["success"]
        assert stats["processed"] == {"coiffe": 1, "cape": 1}
        assert stats["skipped_slots"] == ["boots"]
        assert stats["dimensions"] == 96
        assert output_path.exists()

        reloaded = ItemIndex(config, index_path=str(output_path))
        assert reloaded.load()
        assert reloaded.items["coiffe"][0].set_id == 3

    def test_missing_catalog(self, tmp_path, config):
        stats = build_index_from_file(str(tmp_path / "nope.json"), config)
        assert not stats["success"]
        assert "error" in stats

    def test_catalog_with_no_valid_entries(self, tmp_path, config):
        catalog_path = tmp_path / "catalog.json"
        catalog_path.write_text(json.dumps([{"label": "no id", "slot": "cape"}]))
        stats = build_index_from_file(str(catalog_path), config)
        assert not stats["success"]
