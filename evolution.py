# evolution.py – ES 本体: 個体群生成 → tick → 全滅 → 更新 → 次世代
from __future__ import annotations
import logging, math
from collections import deque
from enum import Enum

import numpy as np
from deap import tools

from collective import (CollectiveInsights, extract_insights, apply_collective_learning,
                        collective_learning_rate, cultural_seeds)
from config import EvolutionConfig
from core import BOARD_W, BOARD_H
from game_runner import GameRunner
from genome import Genome, Provenance, new_genome_id
from novelty import NoveltyArchive
from numba_core import bag_sequence
from policy import create_seed_params, create_random_params, param_count, summarize_policy
from records import (LineageNode, TelemetryFrame, LeaderboardEntry, Leaderboard,
                     GhostPlayback, GenerationSnapshot)

log = logging.getLogger(__name__)


class Phase(str, Enum):
    BUILD_POPULATION = "build-population"
    RUN_TICKS = "run-ticks"
    ALL_DEAD = "all-dead"
    EVOLVE = "evolve"


# ───────────────────────── 純粋関数 ─────────────────────────
def centered_ranks(values):
    """順位を [-0.5, 0.5] に写す（同点は平均順位）"""
    values = np.asarray(values, dtype=np.float64)
    n = values.shape[0]
    if n < 2:
        return np.zeros(n, dtype=np.float64)
    ranks = np.empty(n, dtype=np.float64)
    ranks[np.argsort(values, kind="stable")] = np.arange(n, dtype=np.float64)
    _, group = np.unique(values, return_inverse=True)
    group = group.reshape(-1)
    ranks = (np.bincount(group, weights=ranks) / np.bincount(group))[group]
    return ranks / (n - 1) - 0.5


def combine_utilities(fitness_u, novelty_u, weight):
    return np.asarray(fitness_u) * (1.0 - weight) + np.asarray(novelty_u) * weight


def es_update(mean, noise, utilities, step_size, sigma):
    """mean + α/(N·σ) · Σ uᵢ εᵢ（乱数なし）"""
    utilities = np.asarray(utilities, dtype=np.float64)
    grad = utilities @ np.asarray(noise, dtype=np.float64)
    return np.asarray(mean, dtype=np.float64) + step_size / (utilities.shape[0] * sigma) * grad


def diversity_index(params, scale: float = 1.0) -> float:
    """平均ペア間ユークリッド距離 D → 100·(1 − exp(−D/scale))"""
    params = np.asarray(params, dtype=np.float64)
    n = params.shape[0]
    if n < 2:
        return 0.0
    sq = np.sum(params * params, axis=1)
    d2 = np.maximum(sq[:, None] + sq[None, :] - 2.0 * params @ params.T, 0.0)
    iu = np.triu_indices(n, 1)
    mean_d = float(np.mean(np.sqrt(d2[iu])))
    return 100.0 * (1.0 - math.exp(-mean_d / scale))


def make_statistics():
    stats = tools.Statistics(key=lambda r: r.fitness)
    stats.register("max", np.max)
    stats.register("avg", np.mean)
    stats.register("median", np.median)
    stats.register("min", np.min)
    stats.register("std", np.std)
    return stats


# ───────────────────────── エンジン ─────────────────────────
class EvolutionEngine:
    """ES の全状態を持つ唯一のオブジェクト（モジュール変数は使わない）"""

    def __init__(self, config: EvolutionConfig | None = None, seed=None):
        self.config = config or EvolutionConfig()
        self.rng = np.random.default_rng(seed)
        self.statistics = make_statistics()
        self.reset()

    def reset(self):
        cfg = self.config
        self.generation = 1
        self.param_count = param_count(cfg.hidden_size)
        self.mean = create_seed_params(self.rng, cfg.hidden_size)
        self.sigma = cfg.sigma_init
        self.step_size = cfg.lr_init
        self.sigma_mode = "anneal"
        self.stagnation_count = 0
        self.fitness_window = deque(maxlen=cfg.stagnation_window)
        self.best_ever_fitness: float | None = None
        self.best_ever_score = 0
        self.hall_of_fame: Genome | None = None
        self.archive = NoveltyArchive(cfg.archive_size, cfg.novelty_k)
        self.stage_index = 0
        self.diversity = 100.0
        self.extinction_pending = False
        self.elites: list[Genome] = []
        self.seeds: list[Genome] = []
        self.lineage = deque(maxlen=cfg.lineage_history)
        self.telemetry = deque(maxlen=cfg.telemetry_history)
        self.timeline = deque(maxlen=cfg.timeline_history)
        self.leaderboard = Leaderboard(cfg.leaderboard_size)
        self.ghost: GhostPlayback | None = None
        self.logbook = tools.Logbook()
        self.logbook.header = ("gen", "max", "avg", "median", "sigma", "diversity")
        self.last_report: dict | None = None
        self.runners: list[GameRunner] = []
        self.noise = np.zeros((0, self.param_count))
        self.build_population()

    @property
    def stage(self):
        return self.config.curriculum[self.stage_index]

    def _child_rng(self):
        return np.random.default_rng(int(self.rng.integers(2**31)))

    def _sequences(self):
        # 同世代の全ゲノムが同じミノ列で戦う
        length = self.stage.piece_cap + 16
        return [bag_sequence(int(self.rng.integers(2**31)), length)
                for _ in range(self.config.runs_per_genome)]

    def _random_genome(self, provenance=Provenance.IMMIGRANT):
        params = create_random_params(self.rng, self.config.hidden_size)
        return Genome.create(params, self.generation, provenance, sigma=self.sigma)

    def conform(self, genome: Genome) -> Genome:
        """長さが合わないパラメータは新しい乱数ベクトルに差し替え"""
        if genome.params.shape == (self.param_count,) and np.all(np.isfinite(genome.params)):
            return genome
        log.warning("genome %s has %d params (expected %d); resampled",
                    genome.id, genome.params.size, self.param_count)
        params = create_random_params(self.rng, self.config.hidden_size)
        return genome.clone(params=params, summary=summarize_policy(params, self.sigma),
                            provenance=Provenance.IMPORTED)

    # ── BUILD_POPULATION ─────────────────────────
    def build_population(self, genomes=None):
        cfg = self.config
        n = cfg.population_size
        gen = self.generation
        self.phase = Phase.BUILD_POPULATION
        members: list[Genome] = []
        noise = []
        zero = np.zeros(self.param_count)

        def add(g, eps=None):
            members.append(g)
            noise.append(zero if eps is None else eps)

        if genomes is not None:
            for g in list(genomes)[:n]:
                add(self.conform(g))
        else:
            hof = self.hall_of_fame if cfg.hall_of_fame else None
            if hof is not None:
                add(hof.clone(id=new_genome_id(), generation=gen, parents=(hof.id,),
                              provenance=Provenance.HALL_OF_FAME))
            for e in self.elites:
                if len(members) >= n:
                    break
                if hof is not None and np.array_equal(e.params, hof.params):
                    continue
                add(e.clone(id=new_genome_id(), generation=gen, parents=(e.id,),
                            provenance=Provenance.ELITE))
            for s in self.seeds:
                if len(members) < n:
                    add(s)
            if gen == 1 and not members:
                add(Genome.create(self.mean, gen, Provenance.SEED, sigma=self.sigma))

            immigrants = cfg.immigrant_count
            if self.extinction_pending:
                extra = math.ceil(cfg.extinction_fraction * n)
                immigrants += extra
                log.warning("mass extinction at generation %d: %d random immigrants", gen, extra)
            for _ in range(min(immigrants, n - len(members))):
                add(self._random_genome())
        self.seeds = []
        self.extinction_pending = False

        # 残りは対称（antithetic）サンプル
        while len(members) < n:
            eps = self.rng.standard_normal(self.param_count)
            for sign in (1.0, -1.0):
                if len(members) >= n:
                    break
                add(Genome.create(self.mean + sign * self.sigma * eps, gen,
                                  Provenance.ES_SAMPLE, sigma=self.sigma), sign * eps)

        self.noise = np.vstack(noise)
        seqs = self._sequences()
        self.runners = [GameRunner(g, seqs, cfg, self.stage, self._child_rng()) for g in members]
        self.diversity = diversity_index(np.stack([g.params for g in members]), cfg.diversity_scale)
        self.phase = Phase.RUN_TICKS

    # ── RUN_TICKS ───────────────────────────────
    def step(self) -> bool:
        """全個体を 1 tick 進める。世代が切り替わったら True"""
        if self.phase is not Phase.RUN_TICKS:
            return False
        running = False
        for r in self.runners:
            if not r.finished:
                r.tick()
                running = running or not r.finished
        if running:
            return False
        self.phase = Phase.ALL_DEAD
        self.evolve()
        return True

    def run_generation(self, max_ticks: int | None = None) -> dict | None:
        ticks = 0
        while not self.step():
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                return None
        return self.last_report

    # ── EVOLVE ──────────────────────────────────
    def evolve(self):
        cfg = self.config
        self.phase = Phase.EVOLVE
        runners = self.runners
        fitness = np.array([r.fitness for r in runners], dtype=np.float64)
        sigs = np.stack([r.signature for r in runners])
        novelty = self.archive.novelty_scores(sigs)
        diversity = diversity_index(np.stack([r.genome.params for r in runners]), cfg.diversity_scale)

        util = combine_utilities(centered_ranks(fitness), centered_ranks(novelty), cfg.novelty_weight)
        self.mean = es_update(self.mean, self.noise, util, self.step_size, self.sigma)

        insights = CollectiveInsights()
        if cfg.collective_learning:
            insights = extract_insights(runners, cfg.collective_min_pieces, cfg.collective_min_agents)
            lr = collective_learning_rate(self.generation, cfg.collective_lr,
                                          cfg.collective_decay, cfg.collective_floor)
            self.mean = apply_collective_learning(self.mean, insights, lr)

        best_i = int(np.argmax(fitness))
        gen_best = float(fitness[best_i])
        prev_best = self.best_ever_fitness
        self._update_schedules(gen_best, prev_best, diversity)
        if prev_best is None or gen_best > prev_best:
            self.best_ever_fitness = gen_best
            self.hall_of_fame = runners[best_i].genome

        self.archive.add_most_novel(sigs, novelty, cfg.archive_add_per_gen)
        self.elites = [runners[i].genome for i in np.argsort(-fitness, kind="stable")[:cfg.elite_count]]
        self.seeds = cultural_seeds(insights, self.generation + 1, self.sigma, cfg.cultural_seed_count)

        self._record_generation(fitness, novelty, diversity, best_i)
        self.advance_curriculum()
        self.extinction_pending = diversity < cfg.extinction_floor

        rep = self.last_report
        log.info("gen %d: best %.1f avg %.1f sigma %.4f diversity %.1f stage %s (%s)",
                 rep["generation"], rep["max"], rep["avg"], self.sigma, diversity,
                 self.stage.name, self.sigma_mode)
        self.generation += 1
        self.build_population()

    def _update_schedules(self, gen_best, prev_best, diversity):
        cfg = self.config
        self.fitness_window.append(gen_best)
        if len(self.fitness_window) >= cfg.stagnation_min_samples:
            if self.fitness_window[-1] - self.fitness_window[0] <= 0:
                self.stagnation_count += 1
            else:
                self.stagnation_count = 0

        scheduled_lr = max(cfg.lr_floor, cfg.lr_init * cfg.lr_decay ** self.generation)
        spike = (prev_best is not None
                 and gen_best - prev_best > cfg.spike_ratio * max(1.0, abs(prev_best)))

        if spike and diversity >= cfg.healthy_diversity:
            # 発見を活かす: σ を床まで下げる
            self.sigma = cfg.sigma_floor
            self.step_size = min(cfg.lr_init, scheduled_lr * cfg.spike_lr_boost)
            self.sigma_mode = "exploit"
        elif spike:
            self.sigma = max(self.sigma, cfg.sigma_elevated)
            self.step_size = scheduled_lr
            self.sigma_mode = "explore"
        elif self.stagnation_count >= cfg.long_stagnation:
            self.sigma = min(cfg.sigma_max, self.sigma * cfg.sigma_boost)
            self.step_size = cfg.lr_init
            self.sigma_mode = "escape"
        elif self.stagnation_count > 0:
            self.sigma = max(cfg.sigma_floor, self.sigma * cfg.sigma_fine_tune)
            self.step_size = max(cfg.lr_floor, scheduled_lr * 0.5)
            self.sigma_mode = "fine-tune"
        else:
            self.sigma = max(cfg.sigma_floor, self.sigma * cfg.sigma_decay)
            self.step_size = scheduled_lr
            self.sigma_mode = "anneal"

    def advance_curriculum(self):
        stages = self.config.curriculum
        while (self.stage_index + 1 < len(stages)
               and self.best_ever_score >= stages[self.stage_index + 1].min_score):
            self.stage_index += 1
            log.info("curriculum -> %s (gravity x%.2f, cap %d)", self.stage.name,
                     self.stage.gravity_scale, self.stage.piece_cap)

    def _record_generation(self, fitness, novelty, diversity, best_i):
        gen = self.generation
        runners = self.runners

        nodes = []
        for r, f, nv in zip(runners, fitness, novelty):
            g = r.genome
            nodes.append(LineageNode(g.id, gen, list(g.parents), float(f), int(r.best_score),
                                     int(r.best_lines), int(r.best_level), float(nv),
                                     g.provenance.value, [float(v) for v in r.signature]))
            self.leaderboard.update(LeaderboardEntry(g.id, int(r.best_score), int(r.best_level),
                                                     int(r.best_lines), gen, g.provenance.value))
        self.lineage.append(nodes)

        agg = [r.aggregate_stats() for r in runners]
        runs = [max(1, len(r.run_results)) for r in runners]
        avg_holes = float(np.mean([a.avg_holes for a in agg]))
        self.telemetry.append(TelemetryFrame(
            generation=gen,
            avg_score=float(np.mean([a.score / k for a, k in zip(agg, runs)])),
            avg_lines=float(np.mean([a.lines / k for a, k in zip(agg, runs)])),
            avg_level=float(np.mean([r.best_level for r in runners])),
            max_score=int(max(r.best_score for r in runners)),
            max_lines=int(max(r.best_lines for r in runners)),
            avg_holes=avg_holes,
            avg_bumpiness=float(np.mean([a.avg_bumpiness for a in agg])),
            avg_max_height=float(np.mean([a.avg_max_height for a in agg])),
            avg_wells=float(np.mean([a.avg_wells for a in agg])),
            hole_density=avg_holes / (BOARD_W * BOARD_H),
            sigma=float(self.sigma),
            diversity=float(diversity),
            step_size=float(self.step_size),
        ))

        top = max(runners, key=lambda r: r.best_score)
        self.best_ever_score = max(self.best_ever_score, int(top.best_score))
        if self.ghost is None or top.best_score > self.ghost.score:
            self.ghost = GhostPlayback(top.genome.id, gen, int(top.best_score), list(top.best_frames))

        best = runners[best_i]
        self.timeline.append(GenerationSnapshot(gen, best.genome.id, int(best.score),
                                                int(best.lines), best.grid.tolist()))

        record = self.statistics.compile(runners)
        self.logbook.record(gen=gen, sigma=float(self.sigma), diversity=float(diversity),
                            **{k: float(v) for k, v in record.items()})
        self.last_report = {
            "generation": gen,
            "max": float(record["max"]),
            "avg": float(record["avg"]),
            "median": float(record["median"]),
            "bestEver": float(self.best_ever_fitness),
            "sigma": float(self.sigma),
            "diversity": float(diversity),
            "stage": self.stage.name,
            "mode": self.sigma_mode,
            "extinction": diversity < self.config.extinction_floor,
        }

    # ── 外部からの操作 ───────────────────────────
    def runner_by_id(self, genome_id: str):
        for r in self.runners:
            if r.genome.id == genome_id:
                return r
        return None

    def _replace_slot(self, slot: int, genome: Genome):
        # 勾配に入らないよう雑音行は 0
        old = self.runners[slot]
        self.runners[slot] = GameRunner(genome, old.sequences, self.config, self.stage, self._child_rng())
        self.noise[slot] = 0.0

    def inject_genome(self, genome: Genome):
        """最後の ES サンプル枠（無ければ最後の枠）を差し替える"""
        genome = self.conform(genome).clone(generation=self.generation,
                                            provenance=Provenance.IMPORTED)
        slot = len(self.runners) - 1
        for i in range(len(self.runners) - 1, -1, -1):
            if self.runners[i].genome.provenance is Provenance.ES_SAMPLE:
                slot = i
                break
        self._replace_slot(slot, genome)
        log.info("injected genome %s into slot %d", genome.id, slot)

    def force_mutate(self, genome_id: str) -> Genome | None:
        """指定個体を強い摂動 max(floor, 2σ) で作り直し、同じ枠で最初から走らせる"""
        for slot, r in enumerate(self.runners):
            if r.genome.id == genome_id:
                break
        else:
            return None
        old = r.genome
        scale = max(self.config.force_mutate_sigma, 2.0 * self.sigma)
        params = old.params + scale * self.rng.standard_normal(self.param_count)
        child = Genome.create(params, self.generation, Provenance.ES_SAMPLE,
                              parents=(old.id,), sigma=self.sigma)
        self._replace_slot(slot, child)
        log.info("force-mutated %s -> %s (scale %.3f)", old.id, child.id, scale)
        return child

    def install_population(self, genomes, generation: int):
        """取り込んだゲノムで個体群を作り直す。平均は取り込んだ params の平均"""
        genomes = [self.conform(g) for g in genomes]
        self.generation = max(1, int(generation))
        if genomes:
            self.mean = np.mean(np.stack([g.params for g in genomes]), axis=0)
        self.elites, self.seeds = [], []
        self.build_population(genomes)

    def stats(self) -> dict:
        fits = [r.current_fitness() for r in self.runners]
        return {
            "generation": self.generation,
            "maxFitness": float(np.max(fits)) if fits else 0.0,
            "avgFitness": float(np.mean(fits)) if fits else 0.0,
            "medianFitness": float(np.median(fits)) if fits else 0.0,
            "bestEverFitness": float(self.best_ever_fitness or 0.0),
            "diversity": round(float(self.diversity), 2),
            "explorationSigma": float(self.sigma),
            "populationSize": len(self.runners),
            "stage": self.stage.name,
            "mode": self.sigma_mode,
            "stepSize": float(self.step_size),
        }
