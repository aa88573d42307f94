# placement.py – 到達可能な最終設置位置の列挙（BFS の結果を Python 側へ）
from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from core import ROTATIONS, ROT_DIMS, spawn_x
from numba_core import search_placements, SPAWN_MARGIN

ACTION_NAMES = ("L", "R", "D", "ROT")


@dataclass(frozen=True)
class Placement:
    kind: int
    rotation: int
    x: int
    y: int
    path: tuple = ()

    @property
    def shape(self):
        h, w = ROT_DIMS[self.kind, self.rotation]
        return ROTATIONS[self.kind, self.rotation, :h, :w]

    @property
    def height(self) -> int:
        return int(ROT_DIMS[self.kind, self.rotation, 0])

    def cells(self):
        ys, xs = np.nonzero(self.shape)
        return [(int(self.x + cx), int(self.y + cy)) for cy, cx in zip(ys, xs)]


def _decode(state, cols, ny):
    x = state % cols
    t = state // cols
    return int(x), int(t % ny - SPAWN_MARGIN), int(t // ny)


def _path(state, parent, action):
    steps = []
    while parent[state] >= 0:
        steps.append(ACTION_NAMES[action[state]])
        state = parent[state]
    return tuple(reversed(steps))


def search_arrays(grid, kind: int, x: int | None = None, y: int = 0, rotation: int = 0):
    """(xs, ys, rs) だけ返す軽量版（先読み用）"""
    if x is None:
        x = spawn_x(kind, rotation)
    term, _, _ = search_placements(grid, ROTATIONS[kind], x, y, rotation)
    rows, cols = grid.shape
    ny = rows + SPAWN_MARGIN
    xs = term % cols
    t = term // cols
    return xs, t % ny - SPAWN_MARGIN, t // ny


def find_placements(grid, kind: int, x: int | None = None, y: int = 0,
                    rotation: int = 0, with_paths: bool = True) -> list[Placement]:
    """出現姿勢 (x, y, rotation) から L/R/ソフトドロップ/回転(キック付き) で届く接地状態を全列挙"""
    if x is None:
        x = spawn_x(kind, rotation)
    term, parent, action = search_placements(grid, ROTATIONS[kind], x, y, rotation)
    rows, cols = grid.shape
    ny = rows + SPAWN_MARGIN
    out = []
    for s in term:
        px, py, pr = _decode(int(s), cols, ny)
        path = _path(int(s), parent, action) if with_paths else ()
        out.append(Placement(kind, pr, px, py, path))
    return out


def path_to_inputs(path) -> list[str]:
    """BFS 経路 → 入力列。末尾のソフトドロップはハードドロップ 1 回にまとめる"""
    steps = list(path)
    while steps and steps[-1] == "D":
        steps.pop()
    steps.append("DROP")
    return steps
