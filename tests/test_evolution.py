"""Tests for the ES engine."""

import numpy as np
import pytest

from config import CurriculumStage
from evolution import (EvolutionEngine, Phase, centered_ranks, combine_utilities,
                       es_update, diversity_index)
from genome import Genome, Provenance
from policy import param_count


class TestPureFunctions:
    def test_centered_ranks(self):
        assert centered_ranks([3.0, 1.0, 2.0]) == pytest.approx([0.5, -0.5, 0.0])
        assert centered_ranks([5.0]) == pytest.approx([0.0])

    def test_centered_ranks_average_ties(self):
        u = centered_ranks([2.0, 5.0, 2.0, 1.0])
        assert u == pytest.approx([0.0, 0.5, 0.0, -0.5])
        # 同点の対称サンプル同士は勾配に寄与しない
        assert centered_ranks([3.0, 3.0]) == pytest.approx([0.0, 0.0])
        assert centered_ranks([7.0, 7.0, 7.0]) == pytest.approx([0.0, 0.0, 0.0])

    def test_centered_ranks_sum_to_zero(self, rng):
        u = centered_ranks(rng.random(9))
        assert u.sum() == pytest.approx(0.0)
        assert u.min() == -0.5 and u.max() == 0.5

    def test_combine(self):
        u = combine_utilities(np.array([1.0, -1.0]), np.array([-1.0, 1.0]), 0.25)
        assert u == pytest.approx([0.5, -0.5])

    def test_es_update_value(self):
        mean = np.zeros(3)
        noise = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        out = es_update(mean, noise, [0.5, -0.5], 0.1, 0.5)
        assert out == pytest.approx([0.05, -0.05, 0.0])

    def test_es_update_is_deterministic(self, rng):
        mean = rng.standard_normal(20)
        noise = rng.standard_normal((6, 20))
        u = centered_ranks(rng.random(6))
        a = es_update(mean, noise, u, 0.03, 0.05)
        b = es_update(mean.copy(), noise.copy(), u.copy(), 0.03, 0.05)
        assert np.array_equal(a, b)
        assert not np.shares_memory(a, mean)

    def test_diversity_index(self):
        same = np.ones((4, 5))
        assert diversity_index(same) == pytest.approx(0.0)
        spread = np.eye(4) * 50.0
        assert diversity_index(spread) == pytest.approx(100.0)
        mid = diversity_index(np.array([[0.0], [1.0]]), scale=1.0)
        assert mid == pytest.approx(100.0 * (1.0 - np.exp(-1.0)))


class TestPopulation:
    def test_first_generation(self, small_config):
        eng = EvolutionEngine(small_config, seed=1)
        assert eng.phase is Phase.RUN_TICKS
        assert eng.generation == 1
        assert len(eng.runners) == 4
        assert eng.noise.shape == (4, param_count(2))
        provs = [r.genome.provenance for r in eng.runners]
        assert provs[0] is Provenance.SEED
        assert provs.count(Provenance.IMMIGRANT) == 2
        assert provs[-1] is Provenance.ES_SAMPLE

    def test_antithetic_pairs(self, small_config):
        small_config.immigrant_count = 0
        small_config.population_size = 5
        eng = EvolutionEngine(small_config, seed=2)
        # 0 番はシード、その後 (+ε, −ε) の組
        assert np.array_equal(eng.noise[1], -eng.noise[2])
        assert np.array_equal(eng.noise[3], -eng.noise[4])
        for i in range(1, 5):
            expected = eng.mean + eng.sigma * eng.noise[i]
            assert eng.runners[i].genome.params == pytest.approx(expected)

    def test_runners_share_sequences(self, small_config):
        eng = EvolutionEngine(small_config, seed=3)
        first = eng.runners[0].sequences
        assert all(r.sequences is first for r in eng.runners)


class TestGeneration:
    def test_run_generation(self, small_config):
        eng = EvolutionEngine(small_config, seed=4)
        mean0 = eng.mean.copy()
        rep = eng.run_generation()
        assert rep["generation"] == 1
        assert eng.generation == 2
        assert eng.phase is Phase.RUN_TICKS
        assert len(eng.runners) == 4
        assert len(eng.lineage) == 1 and len(eng.lineage[0]) == 4
        assert len(eng.telemetry) == 1
        assert len(eng.logbook) == 1
        assert eng.logbook[0]["gen"] == 1
        assert eng.hall_of_fame is not None
        assert eng.ghost is not None and eng.ghost.frames
        assert eng.leaderboard.entries
        assert not np.array_equal(eng.mean, mean0)

    def test_second_generation_keeps_champion(self, small_config):
        eng = EvolutionEngine(small_config, seed=5)
        eng.run_generation()
        hof = eng.hall_of_fame
        first = eng.runners[0].genome
        assert first.provenance is Provenance.HALL_OF_FAME
        assert first.parents == (hof.id,)
        assert first.id != hof.id
        assert np.array_equal(first.params, hof.params)

    def test_lineage_is_bounded(self, small_config):
        small_config.lineage_history = 2
        eng = EvolutionEngine(small_config, seed=6)
        for _ in range(3):
            eng.run_generation()
        assert len(eng.lineage) == 2
        assert eng.lineage[-1][0].generation == 3

    def test_stats_keys(self, small_config):
        eng = EvolutionEngine(small_config, seed=7)
        st = eng.stats()
        assert set(st) >= {"generation", "maxFitness", "avgFitness", "medianFitness",
                           "bestEverFitness", "diversity", "explorationSigma",
                           "populationSize", "stage"}
        assert 0.0 <= st["diversity"] <= 100.0


class TestSchedules:
    def make(self, small_config, **kw):
        for k, v in kw.items():
            setattr(small_config, k, v)
        return EvolutionEngine(small_config, seed=8)

    def test_anneal(self, small_config):
        eng = self.make(small_config)
        s0 = eng.sigma
        eng._update_schedules(10.0, None, 50.0)
        assert eng.sigma_mode == "anneal"
        assert eng.sigma == pytest.approx(max(small_config.sigma_floor, s0 * small_config.sigma_decay))

    def test_spike_with_healthy_diversity_locks_floor(self, small_config):
        eng = self.make(small_config)
        eng._update_schedules(1000.0, 10.0, 80.0)
        assert eng.sigma_mode == "exploit"
        assert eng.sigma == small_config.sigma_floor

    def test_spike_with_low_diversity_raises_sigma(self, small_config):
        eng = self.make(small_config, sigma_init=0.02)
        eng._update_schedules(1000.0, 10.0, 1.0)
        assert eng.sigma_mode == "explore"
        assert eng.sigma == small_config.sigma_elevated

    def test_long_stagnation_boosts(self, small_config):
        eng = self.make(small_config, stagnation_min_samples=2, long_stagnation=3)
        sigmas = []
        for _ in range(6):
            eng._update_schedules(5.0, 5.0, 50.0)
            sigmas.append(eng.sigma)
        assert eng.sigma_mode == "escape"
        assert sigmas[-1] > sigmas[-2]
        assert eng.sigma <= small_config.sigma_max

    def test_learning_rate_floor(self, small_config):
        eng = self.make(small_config)
        eng.generation = 10_000
        eng._update_schedules(1.0, None, 50.0)
        assert eng.step_size == pytest.approx(small_config.lr_floor)


class TestCurriculumAndExtinction:
    def test_curriculum_advances_with_best_score(self, small_config):
        small_config.curriculum = (CurriculumStage("a", 0, 0.5, 4), CurriculumStage("b", 1, 1.0, 5))
        eng = EvolutionEngine(small_config, seed=9)
        eng.run_generation()
        assert eng.stage.name == "b"
        assert all(r.stage.piece_cap == 5 for r in eng.runners)

    def test_extinction_adds_immigrants(self, small_config):
        small_config.population_size = 10
        small_config.immigrant_count = 0
        small_config.extinction_fraction = 0.5
        eng = EvolutionEngine(small_config, seed=10)
        eng.extinction_pending = True
        eng.build_population()
        provs = [r.genome.provenance for r in eng.runners]
        assert provs.count(Provenance.IMMIGRANT) == 5
        assert not eng.extinction_pending

    def test_low_diversity_triggers_extinction(self, small_config):
        small_config.population_size = 10
        small_config.immigrant_count = 0
        small_config.elite_count = 0
        small_config.cultural_seed_count = 0
        small_config.extinction_fraction = 0.5
        small_config.extinction_floor = 101.0        # 多様性指数は 100 を超えない
        eng = EvolutionEngine(small_config, seed=15)
        assert not any(r.genome.provenance is Provenance.IMMIGRANT for r in eng.runners)
        rep = eng.run_generation()
        assert rep["extinction"]
        provs = [r.genome.provenance for r in eng.runners]
        assert provs[0] is Provenance.HALL_OF_FAME
        assert provs.count(Provenance.IMMIGRANT) == 5
        assert not eng.extinction_pending


class TestInjection:
    def test_inject_replaces_es_sample(self, small_config, rng):
        eng = EvolutionEngine(small_config, seed=11)
        g = Genome.create(rng.random(param_count(2)), 1, Provenance.ES_SAMPLE)
        eng.inject_genome(g)
        r = eng.runner_by_id(g.id)
        assert r is not None
        assert r.genome.provenance is Provenance.IMPORTED
        assert len(eng.runners) == 4

    def test_inject_wrong_size_is_resampled(self, small_config):
        eng = EvolutionEngine(small_config, seed=12)
        g = Genome.create(np.ones(7), 1, Provenance.ES_SAMPLE)
        eng.inject_genome(g)
        r = eng.runner_by_id(g.id)
        assert r.genome.params.shape == (param_count(2),)
        assert r.genome.provenance is Provenance.IMPORTED

    def test_reset(self, small_config):
        eng = EvolutionEngine(small_config, seed=13)
        eng.run_generation()
        eng.reset()
        assert eng.generation == 1
        assert not eng.lineage and not eng.telemetry and len(eng.logbook) == 0

    def test_force_mutate_replaces_slot(self, small_config):
        eng = EvolutionEngine(small_config, seed=14)
        slot = len(eng.runners) - 1
        old = eng.runners[slot].genome
        assert old.provenance is Provenance.ES_SAMPLE
        child = eng.force_mutate(old.id)
        assert eng.runners[slot].genome is child
        assert child.id != old.id
        assert child.parents == (old.id,)
        assert child.provenance is Provenance.ES_SAMPLE
        assert not np.any(eng.noise[slot])
        # 摂動の大きさは max(0.2, 2σ) = 0.2
        assert 0.1 < float(np.std(child.params - old.params)) < 0.3
        assert len(eng.runners) == small_config.population_size

    def test_force_mutate_unknown_id(self, small_config):
        eng = EvolutionEngine(small_config, seed=16)
        ids = [r.id for r in eng.runners]
        assert eng.force_mutate("nobody") is None
        assert [r.id for r in eng.runners] == ids
