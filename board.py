# board.py – 盤面ステートマシン（出現・移動・回転・固定・消去・せり上がり）
from __future__ import annotations
import math
from dataclasses import dataclass

import numpy as np

from config import GameConfig
from core import BOARD_W, BOARD_H, GARBAGE, KICKS, ROTATIONS, ROT_DIMS, spawn_x
from numba_core import check_collision, write_piece, clear_lines

LINE_POINTS = {1: 100, 2: 400, 3: 900, 4: 2500}


@dataclass
class Piece:
    kind: int
    rotation: int = 0
    x: int = 0
    y: int = 0

    @property
    def shape(self):
        h, w = ROT_DIMS[self.kind, self.rotation]
        return ROTATIONS[self.kind, self.rotation, :h, :w]

    @property
    def color(self) -> int:
        return self.kind

    def to_dict(self) -> dict:
        return {"shape": self.shape.tolist(), "x": int(self.x), "y": int(self.y),
                "color": int(self.kind), "rotation": int(self.rotation)}


def level_for(lines: int) -> int:
    return lines // 10 + 1


class BoardState:
    """1 ラン分の盤面。得点・ライン・レベルもここで持つ"""

    def __init__(self, game: GameConfig | None = None, gravity_scale: float = 1.0):
        self.game = game or GameConfig()
        self.gravity_scale = gravity_scale
        self.grid = np.zeros((BOARD_H, BOARD_W), dtype=np.int64)
        self.piece: Piece | None = None
        self.score = 0
        self.lines = 0
        self.pieces = 0
        self.ticks = 0
        self.is_alive = True

    # ── 派生値 ───────────────────────────────────
    @property
    def level(self) -> int:
        return level_for(self.lines)

    @property
    def multiplier(self) -> float:
        g = self.game
        m = (1.0 + self.lines * g.multiplier_per_line
             + math.sqrt(max(0, self.score)) * g.multiplier_per_sqrt_score
             + self.ticks * g.multiplier_per_tick)
        return min(g.multiplier_cap, m)

    @property
    def gravity_threshold(self) -> int:
        g = self.game
        return max(1, int(g.gravity_base * g.gravity_ratio ** (self.level - 1) * self.gravity_scale))

    @property
    def lock_delay(self) -> int:
        g = self.game
        return max(g.lock_min, int(g.lock_base * g.lock_ratio ** (self.level - 1) * self.gravity_scale))

    # ── 基本操作 ─────────────────────────────────
    def check_collision(self, shape, x: int, y: int) -> bool:
        return bool(check_collision(self.grid, shape, x, y))

    def spawn(self, kind: int) -> bool:
        """上端中央に出現。出現位置で衝突したらラン終了"""
        self.piece = Piece(kind, 0, spawn_x(kind), 0)
        if self.check_collision(self.piece.shape, self.piece.x, self.piece.y):
            self.is_alive = False
        return self.is_alive

    def move(self, dx: int, dy: int) -> bool:
        p = self.piece
        if not self.is_alive or p is None:
            return False
        if self.check_collision(p.shape, p.x + dx, p.y + dy):
            return False
        p.x += dx
        p.y += dy
        return True

    def rotate(self) -> bool:
        """時計回り。KICKS の順に試して最初に入った位置を採用"""
        p = self.piece
        if not self.is_alive or p is None:
            return False
        nr = (p.rotation + 1) % 4
        h, w = ROT_DIMS[p.kind, nr]
        shape = ROTATIONS[p.kind, nr, :h, :w]
        for kx, ky in KICKS:
            if not self.check_collision(shape, p.x + kx, p.y + ky):
                p.rotation = nr
                p.x += int(kx)
                p.y += int(ky)
                return True
        return False

    def hard_drop(self) -> int:
        p = self.piece
        if not self.is_alive or p is None:
            return 0
        while not self.check_collision(p.shape, p.x, p.y + 1):
            p.y += 1
        return self.lock_piece()

    def lock_piece(self) -> int:
        """盤面に書き込み → 行消去 → 得点。次のミノの出現は呼び出し側"""
        p = self.piece
        write_piece(self.grid, p.shape, p.x, p.y, p.color)
        cleared = int(clear_lines(self.grid))

        if cleared:
            self.score += int(LINE_POINTS[cleared] * self.level * self.multiplier)
        self.score += 1
        self.lines += cleared
        self.pieces += 1
        self.piece = None
        return cleared

    def add_garbage_line(self, rng) -> bool:
        """最上段を捨て、穴 1 つのゴミ行を最下段に追加"""
        row = np.full(BOARD_W, GARBAGE, dtype=np.int64)
        row[int(rng.integers(BOARD_W))] = 0
        self.grid = np.ascontiguousarray(np.vstack([self.grid[1:], row[None, :]]))

        p = self.piece
        if p is not None and self.check_collision(p.shape, p.x, p.y):
            if not self.check_collision(p.shape, p.x, p.y - 1):
                p.y -= 1
            else:
                self.is_alive = False
        return self.is_alive

    def filled_cells(self) -> int:
        return int(np.count_nonzero(self.grid))
