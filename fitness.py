# fitness.py – ランの統計 → 整形済み適応度 / 行動シグネチャ
from __future__ import annotations
from dataclasses import dataclass, asdict

import numpy as np

from config import FitnessConfig, GameConfig
from core import BOARD_H
from numba_core import M_HOLES, M_BUMP, M_MAXH, M_WELL

SIGNATURE_SIZE = 5
_FITNESS = FitnessConfig()


@dataclass
class RunStats:
    score: int = 0
    lines: int = 0
    pieces: int = 0
    ticks: int = 0
    tetrises: int = 0
    singles: int = 0
    clears: int = 0            # 1 行以上消した固定の回数
    holes_sum: float = 0.0
    bump_sum: float = 0.0
    max_height_sum: float = 0.0
    well_sum: float = 0.0
    samples: int = 0
    topped_out: bool = False

    def record_lock(self, cleared: int, metrics):
        """固定 1 回ぶん（metrics は board_metrics() の指標配列）"""
        self.pieces += 1
        self.lines += cleared
        if cleared:
            self.clears += 1
        if cleared == 1:
            self.singles += 1
        elif cleared == 4:
            self.tetrises += 1
        self.holes_sum += float(metrics[M_HOLES])
        self.bump_sum += float(metrics[M_BUMP])
        self.max_height_sum += float(metrics[M_MAXH])
        self.well_sum += float(metrics[M_WELL])
        self.samples += 1

    def _avg(self, total):
        return total / self.samples if self.samples else 0.0

    @property
    def avg_holes(self):
        return self._avg(self.holes_sum)

    @property
    def avg_bumpiness(self):
        return self._avg(self.bump_sum)

    @property
    def avg_max_height(self):
        return self._avg(self.max_height_sum)

    @property
    def avg_wells(self):
        return self._avg(self.well_sum)

    def merged(self, other: "RunStats") -> "RunStats":
        a, b = asdict(self), asdict(other)
        out = {k: a[k] + b[k] for k in a if k != "topped_out"}
        return RunStats(**out, topped_out=self.topped_out or other.topped_out)


def compute_fitness(stats: RunStats, cfg: FitnessConfig = _FITNESS,
                    ticks_per_second: int = GameConfig.ticks_per_second) -> float:
    pieces = max(1, stats.pieces)
    holes = stats.avg_holes
    height_frac = stats.avg_max_height / BOARD_H

    base = stats.score / pieces
    # 穴は二乗で、積みが高いほど重く
    hole_pen = cfg.hole_weight * holes * holes * (1.0 + cfg.hole_height_scale * height_frac)
    cleanliness = 1.0 / (1.0 + holes)
    tetris = cfg.tetris_bonus * stats.tetrises * cleanliness
    burn = cfg.burn_penalty * stats.singles
    seconds = max(1.0, stats.ticks / ticks_per_second)
    throughput = cfg.throughput_weight * stats.pieces / seconds
    density = cfg.density_weight * stats.lines / pieces

    fitness = base - hole_pen + tetris - burn + throughput + density
    if stats.topped_out:
        fitness -= cfg.death_penalty
    return float(fitness)


def behavior_signature(stats: RunStats):
    """novelty 用 5 次元: 穴, 凸凹, 最大高さ, 井戸深さ, テトリス率（いずれも [0, 1]）"""
    sig = np.array([
        stats.avg_holes / 20.0,
        stats.avg_bumpiness / 40.0,
        stats.avg_max_height / BOARD_H,
        stats.avg_wells / BOARD_H,
        stats.tetrises / max(1, stats.clears),
    ], dtype=np.float64)
    return np.clip(sig, 0.0, 1.0)
