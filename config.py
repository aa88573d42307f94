# config.py – 調整可能パラメータ（JSON で上書き可）
from __future__ import annotations
import json, pathlib
from dataclasses import dataclass, field, asdict, fields

# ───────────────────────── 既定値 ─────────────────────────
POP = 24
RUNS_PER_GENOME = 3
HIDDEN = 16
SIGMA0 = 0.05
LR0 = 0.03
NOVELTY_W = 0.15


@dataclass(frozen=True)
class CurriculumStage:
    """(重力倍率, 1 ランのミノ上限) の組。min_score は到達に必要な最高素点"""
    name: str
    min_score: int
    gravity_scale: float
    piece_cap: int


DEFAULT_CURRICULUM = (
    CurriculumStage("sprint", 0, 0.5, 60),
    CurriculumStage("club", 3_000, 0.75, 150),
    CurriculumStage("pro", 15_000, 1.0, 400),
    CurriculumStage("marathon", 60_000, 1.5, 1_000),
)


@dataclass
class GameConfig:
    gravity_base: int = 50
    gravity_ratio: float = 0.85
    lock_base: int = 30
    lock_ratio: float = 0.9
    lock_min: int = 4
    max_lock_resets: int = 15
    # 得点倍率 = min(cap, 1 + lines*a + sqrt(score)*b + ticks*c)
    multiplier_cap: float = 4.0
    multiplier_per_line: float = 0.01
    multiplier_per_sqrt_score: float = 0.002
    multiplier_per_tick: float = 1e-5
    base_reaction: int = 12
    max_action_delay: int = 4
    garbage_rate: float = 1e-4        # 1 tick あたり × level
    ticks_per_second: int = 50
    ghost_frame_cap: int = 1_500
    top_k: int = 5
    lookahead_weight: float = 0.4
    lookahead_death_penalty: float = 1e6


@dataclass
class FitnessConfig:
    hole_weight: float = 2.0
    hole_height_scale: float = 3.0
    tetris_bonus: float = 400.0
    burn_penalty: float = 5.0
    throughput_weight: float = 5.0
    density_weight: float = 100.0
    death_penalty: float = 500.0


@dataclass
class EvolutionConfig:
    population_size: int = POP
    runs_per_genome: int = RUNS_PER_GENOME
    hidden_size: int = HIDDEN

    # σ スケジュール
    sigma_init: float = SIGMA0
    sigma_floor: float = 0.01
    sigma_max: float = 0.2
    sigma_decay: float = 0.98
    sigma_elevated: float = 0.08
    sigma_boost: float = 1.5
    sigma_fine_tune: float = 0.9

    # 学習率スケジュール
    lr_init: float = LR0
    lr_decay: float = 0.99
    lr_floor: float = 0.005
    spike_lr_boost: float = 1.5

    # novelty
    novelty_weight: float = NOVELTY_W
    novelty_k: int = 5
    archive_size: int = 200
    archive_add_per_gen: int = 3

    # 個体群の構成
    elite_count: int = 1
    immigrant_count: int = 2
    hall_of_fame: bool = True
    force_mutate_sigma: float = 0.2       # 強制変異の摂動 = max(これ, 2σ)

    # 停滞・スパイク・多様性
    stagnation_window: int = 8
    stagnation_min_samples: int = 5
    long_stagnation: int = 5
    spike_ratio: float = 0.5
    healthy_diversity: float = 20.0
    extinction_floor: float = 5.0
    extinction_fraction: float = 0.3
    diversity_scale: float = 1.0

    # collective learning
    collective_learning: bool = True
    collective_lr: float = 0.05
    collective_decay: float = 0.97
    collective_floor: float = 0.005
    collective_min_pieces: int = 10
    collective_min_agents: int = 5
    cultural_seed_count: int = 1

    # 履歴バッファ
    leaderboard_size: int = 15
    lineage_history: int = 6
    telemetry_history: int = 200
    timeline_history: int = 50

    curriculum: tuple = DEFAULT_CURRICULUM
    game: GameConfig = field(default_factory=GameConfig)
    fitness: FitnessConfig = field(default_factory=FitnessConfig)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EvolutionConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown config keys: {sorted(unknown)}")
        kw = dict(data)
        if "game" in kw:
            kw["game"] = _sub(GameConfig, kw["game"])
        if "fitness" in kw:
            kw["fitness"] = _sub(FitnessConfig, kw["fitness"])
        if "curriculum" in kw:
            kw["curriculum"] = tuple(CurriculumStage(**s) for s in kw["curriculum"])
        return cls(**kw)

    @classmethod
    def from_json(cls, path) -> "EvolutionConfig":
        return cls.from_dict(json.loads(pathlib.Path(path).read_text()))


def _sub(klass, data):
    known = {f.name for f in fields(klass)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"unknown {klass.__name__} keys: {sorted(unknown)}")
    return klass(**data)
