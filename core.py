# core.py – 盤面定義・ミノ定義・特徴量名
from __future__ import annotations
import numpy as np

BOARD_W, BOARD_H = 10, 20
GARBAGE = 8

# id 1..7 = I J L O S T Z（色 id と共通）
PIECE_KINDS = "IJLOSTZ"
KIND2ID = {k: i + 1 for i, k in enumerate(PIECE_KINDS)}

TETROMINOES = {
    1: [[1, 1, 1, 1]],
    2: [[2, 0, 0],
        [2, 2, 2]],
    3: [[0, 0, 3],
        [3, 3, 3]],
    4: [[4, 4],
        [4, 4]],
    5: [[0, 5, 5],
        [5, 5, 0]],
    6: [[0, 6, 0],
        [6, 6, 6]],
    7: [[7, 7, 0],
        [0, 7, 7]],
}

# ウォールキック優先順: なし, ±1 列, 1 段上, ±2 列
KICKS = np.array([[0, 0], [-1, 0], [1, 0], [0, -1], [-2, 0], [2, 0]],
                 dtype=np.int64)


def rotate_cw(shape):
    """時計回り 90°（トリム済みビットマップ）"""
    return np.ascontiguousarray(np.rot90(np.asarray(shape, dtype=np.int64), -1))


# ---------- ROTATIONS[kind][rot][4][4] (0 埋め) / ROT_DIMS[kind][rot] = (h, w) ----------
ROTATIONS = np.zeros((8, 4, 4, 4), dtype=np.int64)
ROT_DIMS = np.zeros((8, 4, 2), dtype=np.int64)
for _kind, _base in TETROMINOES.items():
    _shape = np.asarray(_base, dtype=np.int64)
    for _r in range(4):
        _h, _w = _shape.shape
        ROTATIONS[_kind, _r, :_h, :_w] = _shape
        ROT_DIMS[_kind, _r] = (_h, _w)
        _shape = rotate_cw(_shape)
# -------------------------------------------------------------------------------------


def piece_shape(kind: int, rotation: int = 0):
    """トリム済みの形状を返す"""
    h, w = ROT_DIMS[kind, rotation % 4]
    return ROTATIONS[kind, rotation % 4, :h, :w].copy()


def spawn_x(kind: int, rotation: int = 0) -> int:
    return (BOARD_W - int(ROT_DIMS[kind, rotation % 4, 1])) // 2


# ───────────────────────── 方策の入力特徴量 ─────────────────────────
FEATURES = (
    [f"height_{i}" for i in range(BOARD_W)]
    + [f"holes_{i}" for i in range(BOARD_W)]
    + ["maxHeight", "aggregateHeight", "bumpiness", "holes", "wells",
       "rowTransitions", "colTransitions", "landingHeight", "linesCleared",
       "erodedCells", "centerDev"]
    + [f"next_{k}" for k in PIECE_KINDS]
    + ["greed", "riskAversion", "aggression", "smoothness"]
)

# シード方策の隠れユニット 0 に入れる基準重み
DEFAULT_W = {
    **{f"height_{i}": -0.8 for i in range(BOARD_W)},
    **{f"holes_{i}": -1.0 for i in range(BOARD_W)},
    "maxHeight": -1.0,
    "aggregateHeight": -0.7,
    "bumpiness": -0.5,
    "holes": -1.1,
    "wells": 0.15,
    "rowTransitions": -0.35,
    "colTransitions": -0.35,
    "landingHeight": -0.5,
    "linesCleared": 1.0,
    "erodedCells": 0.6,
    "centerDev": -0.2,
    **{f"next_{k}": 0.0 for k in PIECE_KINDS},
    "greed": 0.3,
    "riskAversion": -0.6,
    "aggression": 0.2,
    "smoothness": 0.4,
}
