"""Tests for persisted snapshot export / restore."""

import json

import numpy as np
import pytest

from core import FEATURES
from evolution import EvolutionEngine
from genome import Genome, Provenance
from policy import param_count
from snapshot import (export_snapshot, restore_snapshot, save_snapshot, load_snapshot,
                      genome_from_payload)

KEYS = {"population", "stats", "leaderboard", "lineage", "telemetryHistory", "ghost",
        "history", "mutationRate", "sigma", "stagnationCount", "timestamp"}


def genome_set(engine):
    return {(r.genome.id, tuple(r.genome.params.tolist()), r.genome.provenance)
            for r in engine.runners}


class TestExport:
    def test_keys_and_json(self, small_config):
        eng = EvolutionEngine(small_config, seed=1)
        eng.run_generation()
        data = export_snapshot(eng)
        assert set(data) >= KEYS
        assert len(data["population"]) == 4
        assert data["history"][0]["gen"] == 1
        json.dumps(data)


class TestRoundTrip:
    def test_population_roundtrip(self, small_config):
        src = EvolutionEngine(small_config, seed=2)
        src.run_generation()
        data = json.loads(json.dumps(export_snapshot(src)))

        dst = EvolutionEngine(small_config, seed=3)
        assert restore_snapshot(dst, data)
        assert genome_set(dst) == genome_set(src)
        assert dst.generation == src.generation
        assert dst.sigma == pytest.approx(src.sigma)
        assert [e.id for e in dst.leaderboard.entries] == [e.id for e in src.leaderboard.entries]
        assert len(dst.logbook) == len(src.logbook)
        assert dst.ghost.score == src.ghost.score

    def test_mean_is_average_of_imported(self, small_config):
        src = EvolutionEngine(small_config, seed=4)
        data = export_snapshot(src)
        dst = EvolutionEngine(small_config, seed=5)
        restore_snapshot(dst, data)
        expected = np.mean([g["params"] for g in data["population"]], axis=0)
        assert dst.mean == pytest.approx(expected)

    def test_file_roundtrip(self, small_config, tmp_path):
        src = EvolutionEngine(small_config, seed=6)
        path = save_snapshot(src, tmp_path / "snap.json")
        dst = EvolutionEngine(small_config, seed=7)
        assert load_snapshot(dst, path)
        assert genome_set(dst) == genome_set(src)


class TestLenientImport:
    def test_short_population_is_padded(self, small_config):
        src = EvolutionEngine(small_config, seed=8)
        data = export_snapshot(src)
        data["population"] = data["population"][:1]
        dst = EvolutionEngine(small_config, seed=9)
        assert restore_snapshot(dst, data)
        assert len(dst.runners) == small_config.population_size
        assert dst.runners[0].genome.id == data["population"][0]["id"]

    def test_bad_params_are_resampled(self, small_config):
        src = EvolutionEngine(small_config, seed=10)
        data = export_snapshot(src)
        data["population"][0]["params"] = [1.0, 2.0]
        data["population"][1]["params"] = "garbage"
        dst = EvolutionEngine(small_config, seed=11)
        assert restore_snapshot(dst, data)
        for i in (0, 1):
            g = dst.runner_by_id(data["population"][i]["id"]).genome
            assert g.params.shape == (param_count(2),)
            assert g.provenance is Provenance.IMPORTED
            assert g.summary.sensitivities

    def test_unknown_provenance_becomes_imported(self, rng):
        d = Genome.create(rng.random(param_count(2)), 1, Provenance.ELITE).to_dict()
        d["provenance"] = "god-child"
        assert genome_from_payload(d, rng, 2).provenance is Provenance.IMPORTED

    def test_legacy_weights(self, rng):
        d = {"id": "old1", "generation": 3,
             "weights": {"holes": -0.9, "lines": 0.7, "height": -0.4, "holeDepth": -1.0},
             "bornMethod": "crossover"}
        g = genome_from_payload(d, rng, 2)
        assert g.id == "old1"
        assert g.provenance is Provenance.IMPORTED
        assert g.params[FEATURES.index("holes")] == pytest.approx(-0.9)
        assert g.params[FEATURES.index("linesCleared")] == pytest.approx(0.7)
        assert g.params[FEATURES.index("aggregateHeight")] == pytest.approx(-0.4)

    @pytest.mark.parametrize("data", [None, 42, {}, {"population": "x"},
                                      {"population": [{"id": "a"}], "leaderboard": [{}]}])
    def test_unreadable_snapshot_starts_fresh(self, small_config, data):
        eng = EvolutionEngine(small_config, seed=12)
        eng.run_generation()
        assert not restore_snapshot(eng, data)
        assert eng.generation == 1
        assert len(eng.runners) == small_config.population_size

    @pytest.mark.parametrize("key, value", [("stagnationCount", None), ("stepSize", None),
                                            ("stepSize", "fast"), ("sigma", "nan")])
    def test_bad_schedule_fields_start_fresh(self, small_config, key, value):
        data = export_snapshot(EvolutionEngine(small_config, seed=14))
        data[key] = value
        eng = EvolutionEngine(small_config, seed=15)
        eng.run_generation()
        assert not restore_snapshot(eng, data)
        assert eng.generation == 1
        assert eng.step_size == small_config.lr_init
        assert eng.sigma == small_config.sigma_init
        assert eng.stagnation_count == 0
        assert len(eng.runners) == small_config.population_size

    def test_unreadable_file(self, small_config, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text("{not json")
        eng = EvolutionEngine(small_config, seed=13)
        assert not load_snapshot(eng, p)
        assert not load_snapshot(eng, tmp_path / "missing.json")
        assert eng.generation == 1
