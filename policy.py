# policy.py – 単層パーセプトロン方策（パラメータ生成・評価・感度サマリ）
from __future__ import annotations
from dataclasses import dataclass, field

import numpy as np

from core import FEATURES, DEFAULT_W, ROTATIONS, ROT_DIMS
from numba_core import calc_features, place_and_clear, policy_forward, evaluate_placements
from config import HIDDEN

INPUT_SIZE = len(FEATURES)


def param_count(hidden: int = HIDDEN, input_size: int = INPUT_SIZE) -> int:
    return input_size * hidden + hidden + hidden * 2 + 2


def hidden_size_for(n_params: int, input_size: int = INPUT_SIZE) -> int | None:
    """パラメータ長から隠れ層サイズを逆算（合わなければ None）"""
    h, rem = divmod(n_params - 2, input_size + 3)
    if h <= 0 or rem:
        return None
    return h


def _offsets(hidden, input_size=INPUT_SIZE):
    w1 = 0
    b1 = w1 + input_size * hidden
    w2 = b1 + hidden
    b2 = w2 + hidden * 2
    return w1, b1, w2, b2


def create_seed_params(rng, hidden: int = HIDDEN):
    """隠れユニット 0 に DEFAULT_W を入れた安定な初期方策"""
    p = np.zeros(param_count(hidden), dtype=np.float64)
    w1, b1, w2, b2 = _offsets(hidden)
    p[w1:b1] = (rng.random(b1 - w1) - 0.5) * 0.2
    p[b1:w2] = (rng.random(hidden) - 0.5) * 0.1
    p[w2:b2] = (rng.random(hidden * 2) - 0.5) * 0.2
    p[w1:w1 + INPUT_SIZE] = [DEFAULT_W.get(f, 0.0) for f in FEATURES]
    p[w2] = 1.0
    return p


def create_random_params(rng, hidden: int = HIDDEN):
    return (rng.random(param_count(hidden)) - 0.5) * 0.5


def extract_features(grid, placement, lines: int, eroded: int, next_kind: int = 0):
    """設置後の盤面 grid と候補手から入力ベクトルを作る"""
    rows, cols = grid.shape
    h, w = ROT_DIMS[placement.kind, placement.rotation]
    out = np.zeros(INPUT_SIZE, dtype=np.float64)
    calc_features(grid, rows - (placement.y + h), lines, eroded,
                  abs((placement.x + w / 2.0) - cols / 2.0), next_kind, out)
    return out


def forward(params, features, hidden: int | None = None):
    """→ (score, speed)。speed は [0, 1]"""
    hidden = hidden or hidden_size_for(len(params))
    s, sp = policy_forward(np.asarray(params, dtype=np.float64), features, hidden)
    return float(s), float(sp)


def score_placement(grid, placement, next_kind, params, hidden=None):
    sim, lines, eroded = place_and_clear(grid, placement.shape, placement.x, placement.y, placement.kind)
    return forward(params, extract_features(sim, placement, lines, eroded, next_kind), hidden)


def score_arrays(grid, kind, xs, ys, rs, next_kind, params, hidden):
    return evaluate_placements(grid, ROTATIONS[kind], ROT_DIMS[kind], xs, ys, rs,
                               kind, next_kind, params, hidden)


# ───────────────────────── 感度サマリ（表示専用） ─────────────────────────
@dataclass
class PolicySummary:
    sensitivities: dict = field(default_factory=dict)
    exploration: float = 0.0

    def to_dict(self) -> dict:
        return {"sensitivities": dict(self.sensitivities), "exploration": float(self.exploration)}

    @staticmethod
    def from_dict(d) -> "PolicySummary":
        return PolicySummary({str(k): float(v) for k, v in d.get("sensitivities", {}).items()},
                             float(d.get("exploration", 0.0)))


def summarize_policy(params, exploration: float, hidden: int | None = None) -> PolicySummary:
    """入力 i ごとに Σ_h W2[0,h]·W1[h,i] を最大絶対値で [-1, 1] に正規化"""
    params = np.asarray(params, dtype=np.float64)
    hidden = hidden or hidden_size_for(len(params))
    if hidden is None:
        return PolicySummary({}, float(exploration))
    w1, b1, w2, _ = _offsets(hidden)
    W1 = params[w1:b1].reshape(hidden, INPUT_SIZE)
    importances = params[w2:w2 + hidden] @ W1
    max_abs = max(1e-6, float(np.max(np.abs(importances))))
    sens = np.clip(importances / max_abs, -1.0, 1.0)
    return PolicySummary({f: float(v) for f, v in zip(FEATURES, sens)}, float(exploration))
