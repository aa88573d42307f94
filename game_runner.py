# game_runner.py – 1 ゲノムのプレイ（複数ラン → 中央値で 1 サンプル）
from __future__ import annotations
import math
from collections import deque

import numpy as np

from board import BoardState
from config import EvolutionConfig, CurriculumStage
from fitness import RunStats, compute_fitness, behavior_signature
from numba_core import board_metrics, place_and_clear
from placement import find_placements, search_arrays, path_to_inputs
from policy import score_arrays, hidden_size_for
from records import GhostFrame


def best_next_score(grid, kind, next_kind, params, hidden):
    """次ミノの最善スコア。置き場所が無ければ None"""
    xs, ys, rs = search_arrays(grid, kind)
    if xs.shape[0] == 0:
        return None
    scores, _ = score_arrays(grid, kind, xs, ys, rs, next_kind, params, hidden)
    return float(scores.max())


def choose_placement(grid, piece, next_kind, after_next_kind, params, hidden,
                     top_k=5, lookahead_weight=0.4, death_penalty=1e6):
    """2 手読み: 上位 top_k 候補だけ次ミノまで展開して混合スコアで選ぶ

    → (placement | None, 混合スコア, speed)
    """
    placements = find_placements(grid, piece.kind, piece.x, piece.y, piece.rotation)
    if not placements:
        return None, -math.inf, 0.5

    xs = np.array([p.x for p in placements], dtype=np.int64)
    ys = np.array([p.y for p in placements], dtype=np.int64)
    rs = np.array([p.rotation for p in placements], dtype=np.int64)
    scores, speeds = score_arrays(grid, piece.kind, xs, ys, rs, next_kind, params, hidden)

    best_i, best = 0, -math.inf
    for i in np.argsort(-scores, kind="stable")[:top_k]:
        p = placements[i]
        sim, _, _ = place_and_clear(grid, p.shape, p.x, p.y, p.kind)
        nxt = best_next_score(sim, next_kind, after_next_kind, params, hidden)
        if nxt is None:
            final = scores[i] - death_penalty
        else:
            final = scores[i] * (1.0 - lookahead_weight) + nxt * lookahead_weight
        if final > best:
            best, best_i = final, int(i)
    return placements[best_i], float(best), float(speeds[best_i])


class GameRunner:
    def __init__(self, genome, sequences, config: EvolutionConfig,
                 stage: CurriculumStage, rng=None):
        self.genome = genome
        self.config = config
        self.game = config.game
        self.stage = stage
        self.sequences = sequences
        self.rng = rng if rng is not None else np.random.default_rng()
        self.hidden = hidden_size_for(len(genome.params))

        self.run_results: list[RunStats] = []
        self.run_index = 0
        self.finished = False
        self.controlled = False
        self.fitness: float | None = None
        self.signature = None
        self.speed = 0.5
        self.last_lines_cleared = 0

        self.best_score = 0
        self.best_lines = 0
        self.best_level = 1
        self.best_frames: list = []
        self._start_run()

    # ── 表示用 ───────────────────────────────────
    @property
    def id(self) -> str:
        return self.genome.id

    @property
    def grid(self):
        return self.board.grid

    @property
    def score(self) -> int:
        return self.board.score

    @property
    def lines(self) -> int:
        return self.board.lines

    @property
    def level(self) -> int:
        return self.board.level

    @property
    def is_alive(self) -> bool:
        return not self.finished and self.board.is_alive

    @property
    def total_pieces(self) -> int:
        return self.aggregate_stats().pieces

    def to_agent_state(self) -> dict:
        b = self.board
        return {
            "id": self.genome.id,
            "grid": b.grid.tolist(),
            "score": int(b.score),
            "lines": int(b.lines),
            "level": int(b.level),
            "multiplier": float(b.multiplier),
            "isAlive": self.is_alive,
            "piecesPlaced": int(b.pieces),
            "genome": self.genome.to_dict(),
            "currentPiece": b.piece.to_dict() if b.piece is not None and self.is_alive else None,
            "nextPiece": int(self.next_kind),
        }

    # ── ラン管理 ─────────────────────────────────
    def _start_run(self):
        self.sequence = self.sequences[self.run_index % len(self.sequences)]
        self.board = BoardState(self.game, self.stage.gravity_scale)
        self.stats = RunStats()
        self.frames = deque(maxlen=self.game.ghost_frame_cap)
        self.piece_index = 0
        self.next_kind = self._draw()
        self.action_queue = deque()
        self.gravity_timer = self.lock_timer = self.lock_resets = 0
        self.action_delay = 0
        self.reaction_timer = 0
        self.planned = False
        self.target = None
        self._spawn_next()

    def _draw(self) -> int:
        kind = int(self.sequence[self.piece_index % len(self.sequence)])
        self.piece_index += 1
        return kind

    def _peek(self) -> int:
        return int(self.sequence[self.piece_index % len(self.sequence)])

    def _spawn_next(self):
        kind = self.next_kind
        self.next_kind = self._draw()
        self.action_queue.clear()
        self.planned = False
        self.target = None
        self.gravity_timer = self.lock_timer = self.lock_resets = 0
        adrenaline = min(8.0, (self.board.level - 1) * 0.5)
        self.reaction_timer = max(0, int((self.game.base_reaction - adrenaline) * (1.0 - self.speed)))
        if not self.board.spawn(kind):
            self._end_run(topped_out=True)

    def _after_lock(self, cleared: int):
        b = self.board
        _, _, m = board_metrics(b.grid)
        self.stats.record_lock(cleared, m)
        self.stats.score = b.score
        self.last_lines_cleared = cleared
        if self.stats.pieces >= self.stage.piece_cap:
            self._end_run(topped_out=False)        # 上限到達は衝突死ではない
            return
        self._spawn_next()

    def _end_run(self, topped_out: bool):
        b = self.board
        b.is_alive = False
        self.stats.topped_out = topped_out
        self.stats.score = b.score
        self.run_results.append(self.stats)
        self.frames.append(GhostFrame(b.grid.tolist()))     # 最終盤面
        if not self.best_frames or b.score > self.best_score:
            self.best_score, self.best_lines, self.best_level = b.score, b.lines, b.level
            self.best_frames = list(self.frames)
        self.run_index += 1
        if self.run_index < self.config.runs_per_genome:
            self._start_run()
        else:
            self._finish()

    def _finish(self):
        self.finished = True
        self.fitness = float(np.median([self._run_fitness(s) for s in self.run_results]))
        self.signature = np.mean([behavior_signature(s) for s in self.run_results], axis=0)

    def _run_fitness(self, stats: RunStats) -> float:
        return compute_fitness(stats, self.config.fitness, self.game.ticks_per_second)

    def current_fitness(self) -> float:
        if self.fitness is not None:
            return self.fitness
        return float(np.median([self._run_fitness(s) for s in self.run_results + [self.stats]]))

    def aggregate_stats(self) -> RunStats:
        out = RunStats()
        for s in self.run_results:
            out = out.merged(s)
        if not self.finished:
            out = out.merged(self.stats)
        return out

    def kill(self):
        if not self.finished:
            self._end_run(topped_out=True)

    def _record_frame(self):
        b = self.board
        piece = b.piece.to_dict() if b.piece is not None and b.is_alive else None
        self.frames.append(GhostFrame(b.grid.tolist(), piece))

    # ── 1 tick ──────────────────────────────────
    def tick(self):
        if self.finished:
            return
        self._advance()
        if not self.finished:
            self._record_frame()        # ゴースト用に毎 tick（ghost_frame_cap 件まで）

    def _advance(self):
        b = self.board
        b.ticks += 1
        self.stats.ticks += 1

        if (not self.controlled and self.game.garbage_rate > 0
                and self.rng.random() < self.game.garbage_rate * b.level):
            self.planned = False
            self.action_queue.clear()
            if not b.add_garbage_line(self.rng):
                self._end_run(topped_out=True)
                return

        p = b.piece
        if b.check_collision(p.shape, p.x, p.y + 1):
            self.lock_timer += 1
            if self.lock_timer >= b.lock_delay:
                self._after_lock(b.lock_piece())
                return
        else:
            self.gravity_timer += 1
            if self.gravity_timer >= b.gravity_threshold:
                self.gravity_timer = 0
                b.move(0, 1)
                self.lock_timer = 0

        if self.controlled:
            return
        if self.reaction_timer > 0:
            self.reaction_timer -= 1
            return
        if not self.planned:
            self._plan()
            self.planned = True
        if self.action_queue and not self._execute(self.action_queue.popleft()):
            self.reaction_timer = self.action_delay

    def _plan(self):
        b = self.board
        choice, _, speed = choose_placement(
            b.grid, b.piece, self.next_kind, self._peek(), self.genome.params, self.hidden,
            self.game.top_k, self.game.lookahead_weight, self.game.lookahead_death_penalty)
        if choice is None:
            # 接地状態が見つからない → その場でハードドロップ
            self.action_queue = deque(["DROP"])
            return
        self.target = choice
        self.speed = speed
        self.action_delay = int(round(self.game.max_action_delay * (1.0 - speed)))
        self.action_queue = deque(path_to_inputs(choice.path))

    def _execute(self, action: str) -> bool:
        """入力 1 つ。固定まで進んだら True"""
        b = self.board
        if action == "DROP":
            self._after_lock(b.hard_drop())
            return True
        if action == "L":
            ok = b.move(-1, 0)
        elif action == "R":
            ok = b.move(1, 0)
        elif action == "D":
            ok = b.move(0, 1)
        elif action == "ROT":
            ok = b.rotate()
        else:
            raise ValueError(f"unknown action {action!r}")
        if ok and self.lock_resets < self.game.max_lock_resets:
            p = b.piece
            if b.check_collision(p.shape, p.x, p.y + 1):
                self.lock_timer = 0
                self.lock_resets += 1
        return False

    def manual_input(self, action: str):
        if self.is_alive:
            self._execute(action)
