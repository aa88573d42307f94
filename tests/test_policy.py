"""Tests for the policy network and feature encoding."""

import numpy as np
import pytest

from core import BOARD_W, BOARD_H, FEATURES, DEFAULT_W, KIND2ID
from placement import find_placements
from policy import (INPUT_SIZE, param_count, hidden_size_for, create_seed_params,
                    create_random_params, extract_features, forward, score_placement,
                    score_arrays, summarize_policy, PolicySummary)
from numba_core import place_and_clear


class TestParams:
    def test_param_count_layout(self):
        assert INPUT_SIZE == len(FEATURES) == 42
        assert param_count(16) == 42 * 16 + 16 + 32 + 2

    def test_hidden_size_roundtrip(self):
        for h in (1, 2, 16):
            assert hidden_size_for(param_count(h)) == h
        assert hidden_size_for(param_count(4) + 1) is None
        assert hidden_size_for(3) is None

    def test_seed_params_carry_default_weights(self, rng):
        p = create_seed_params(rng, 4)
        assert p.shape == (param_count(4),)
        assert p[FEATURES.index("holes")] == pytest.approx(DEFAULT_W["holes"])

    def test_random_params_shape(self, rng):
        assert create_random_params(rng, 3).shape == (param_count(3),)


class TestForward:
    def test_speed_in_unit_interval(self, rng):
        for _ in range(5):
            p = create_random_params(rng, 4) * 20.0
            _, speed = forward(p, rng.random(INPUT_SIZE))
            assert 0.0 <= speed <= 1.0

    def test_zero_params(self):
        score, speed = forward(np.zeros(param_count(2)), np.ones(INPUT_SIZE))
        assert score == 0.0
        assert speed == pytest.approx(0.5)

    def test_batch_matches_single(self, rng):
        grid = np.zeros((BOARD_H, BOARD_W), dtype=np.int64)
        grid[BOARD_H - 1, :6] = 3
        kind, nxt = KIND2ID["L"], KIND2ID["S"]
        p = create_seed_params(rng, 3)
        ps = find_placements(grid, kind, with_paths=False)
        xs = np.array([q.x for q in ps], dtype=np.int64)
        ys = np.array([q.y for q in ps], dtype=np.int64)
        rs = np.array([q.rotation for q in ps], dtype=np.int64)
        scores, speeds = score_arrays(grid, kind, xs, ys, rs, nxt, p, 3)
        for i in (0, len(ps) // 2, len(ps) - 1):
            s, sp = score_placement(grid, ps[i], nxt, p)
            assert scores[i] == pytest.approx(s)
            assert speeds[i] == pytest.approx(sp)


class TestFeatures:
    def test_features_normalized(self):
        grid = np.zeros((BOARD_H, BOARD_W), dtype=np.int64)
        grid[BOARD_H - 3:, :BOARD_W - 1] = 2
        grid[BOARD_H - 2, 4] = 0
        p = find_placements(grid, KIND2ID["I"], with_paths=False)[0]
        sim, lines, eroded = place_and_clear(grid, p.shape, p.x, p.y, p.kind)
        f = extract_features(sim, p, lines, eroded, KIND2ID["T"])
        assert f.shape == (INPUT_SIZE,)
        assert np.all(f >= 0.0) and np.all(f <= 1.0)
        assert f[FEATURES.index("next_T")] == 1.0
        assert sum(f[FEATURES.index(f"next_{k}")] for k in "IJLOSTZ") == 1.0

    def test_hole_feature_counts_covered_cell(self):
        grid = np.zeros((BOARD_H, BOARD_W), dtype=np.int64)
        grid[BOARD_H - 2, 0] = 1
        p = find_placements(grid, KIND2ID["O"], with_paths=False)[0]
        f = extract_features(grid, p, 0, 0)
        assert f[FEATURES.index("holes_0")] == pytest.approx(1 / BOARD_H)
        assert f[FEATURES.index("height_0")] == pytest.approx(2 / BOARD_H)


class TestSummary:
    def test_sensitivities_bounded(self, rng):
        s = summarize_policy(create_seed_params(rng, 4), 0.05)
        vals = np.array(list(s.sensitivities.values()))
        assert set(s.sensitivities) == set(FEATURES)
        assert np.all(np.abs(vals) <= 1.0)
        assert np.max(np.abs(vals)) == pytest.approx(1.0)
        assert s.exploration == pytest.approx(0.05)

    def test_zero_params_floor(self):
        s = summarize_policy(np.zeros(param_count(2)), 0.0)
        assert all(v == 0.0 for v in s.sensitivities.values())

    def test_dict_roundtrip(self, rng):
        s = summarize_policy(create_random_params(rng, 2), 0.1)
        assert PolicySummary.from_dict(s.to_dict()) == s
