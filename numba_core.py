# numba_core.py – 盤面カーネル + JIT 方策 + 配置探索
import numpy as np
from numba import njit

from core import KICKS, FEATURES, PIECE_KINDS

N_INPUTS = len(FEATURES)
N_KINDS = len(PIECE_KINDS)
SPAWN_MARGIN = 2          # キックで盤面より上に出られる段数

# board_metrics() の返り値インデックス
M_AGG, M_HOLES, M_BUMP, M_MAXH, M_WELL, M_ROWT, M_COLT, M_HOLE_DEPTH, M_COMPLETE = range(9)
N_METRICS = 9

# BFS の行動コード
A_LEFT, A_RIGHT, A_DOWN, A_ROT = 0, 1, 2, 3


# ■ 衝突判定（盤外 or 既存ブロックと重なれば True, 上端より上は許可）
@njit(cache=True)
def check_collision(grid, shape, x, y):
    rows, cols = grid.shape
    for py in range(shape.shape[0]):
        for px in range(shape.shape[1]):
            if shape[py, px] == 0:
                continue
            bx = x + px
            by = y + py
            if bx < 0 or bx >= cols or by >= rows:
                return True
            if by >= 0 and grid[by, bx] != 0:
                return True
    return False


# ■ ミノ書き込み（盤内セルのみ）
@njit(cache=True)
def write_piece(grid, shape, x, y, color):
    rows, cols = grid.shape
    for py in range(shape.shape[0]):
        for px in range(shape.shape[1]):
            if shape[py, px] == 0:
                continue
            by = y + py
            bx = x + px
            if 0 <= by < rows and 0 <= bx < cols:
                grid[by, bx] = color


# ■ 行消去（下から走査、消した行は同じ index を再チェック）
@njit(cache=True)
def clear_lines(grid):
    rows, cols = grid.shape
    cleared = 0
    r = rows - 1
    while r >= 0:
        full = True
        for c in range(cols):
            if grid[r, c] == 0:
                full = False
                break
        if not full:
            r -= 1
            continue
        cleared += 1
        for rr in range(r, 0, -1):
            for c in range(cols):
                grid[rr, c] = grid[rr - 1, c]
        for c in range(cols):
            grid[0, c] = 0
    return cleared


# ■ 設置 & 消去（コピー上で）→ (盤面, 消去行数, eroded cells)
@njit(cache=True)
def place_and_clear(grid, shape, x, y, color):
    rows, cols = grid.shape
    sim = grid.copy()
    write_piece(sim, shape, x, y, color)

    piece_cells = 0
    for py in range(shape.shape[0]):
        by = y + py
        if by < 0 or by >= rows:
            continue
        full = True
        for c in range(cols):
            if sim[by, c] == 0:
                full = False
                break
        if not full:
            continue
        for px in range(shape.shape[1]):
            if shape[py, px] != 0:
                piece_cells += 1

    lines = clear_lines(sim)
    return sim, lines, lines * piece_cells


# ■ 列高さ・列ごとの穴・盤面指標
@njit(cache=True)
def board_metrics(grid):
    rows, cols = grid.shape
    heights = np.zeros(cols, dtype=np.int64)
    col_holes = np.zeros(cols, dtype=np.int64)
    m = np.zeros(N_METRICS, dtype=np.float64)

    for x in range(cols):
        above = 0
        for y in range(rows):
            if grid[y, x] != 0:
                if heights[x] == 0:
                    heights[x] = rows - y
                above += 1
            elif above > 0:
                col_holes[x] += 1
                m[M_HOLE_DEPTH] += above
        m[M_AGG] += heights[x]
        m[M_HOLES] += col_holes[x]
        if heights[x] > m[M_MAXH]:
            m[M_MAXH] = heights[x]

    for x in range(cols - 1):
        m[M_BUMP] += abs(heights[x] - heights[x + 1])

    # 井戸（壁は盤面高さ扱い）: 最深のもの
    for x in range(cols):
        left = heights[x - 1] if x > 0 else rows
        right = heights[x + 1] if x < cols - 1 else rows
        if heights[x] < left and heights[x] < right:
            d = min(left, right) - heights[x]
            if d > m[M_WELL]:
                m[M_WELL] = d

    for y in range(rows):
        last = 1
        filled_cells = 0
        for x in range(cols):
            filled = 1 if grid[y, x] != 0 else 0
            filled_cells += filled
            if filled != last:
                m[M_ROWT] += 1
            last = filled
        if last == 0:
            m[M_ROWT] += 1
        if filled_cells == cols:
            m[M_COMPLETE] += 1

    for x in range(cols):
        for y in range(rows - 1):
            cur = 1 if grid[y, x] != 0 else 0
            nxt = 1 if grid[y + 1, x] != 0 else 0
            if cur != nxt:
                m[M_COLT] += 1
        if grid[0, x] != 0:
            m[M_COLT] += 1
        if grid[rows - 1, x] == 0:
            m[M_COLT] += 1

    return heights, col_holes, m


# ■ 特徴量ベクトル（core.FEATURES と同じ並び）
@njit(cache=True)
def calc_features(grid, landing_height, lines, eroded, center_dev, next_kind, out):
    rows, cols = grid.shape
    heights, col_holes, m = board_metrics(grid)
    out[:] = 0.0

    for i in range(cols):
        out[i] = heights[i] / rows
        out[cols + i] = col_holes[i] / rows
    k = 2 * cols

    maxh_n = m[M_MAXH] / rows
    holes_n = min(1.0, m[M_HOLES] / 40.0)
    bump_n = min(1.0, m[M_BUMP] / 40.0)
    well_n = m[M_WELL] / rows
    lines_n = lines / 4.0

    out[k + 0] = maxh_n
    out[k + 1] = m[M_AGG] / (rows * cols)
    out[k + 2] = bump_n
    out[k + 3] = holes_n
    out[k + 4] = well_n
    out[k + 5] = m[M_ROWT] / (rows * (cols + 1))
    out[k + 6] = m[M_COLT] / (cols * (rows + 1))
    out[k + 7] = landing_height / rows
    out[k + 8] = lines_n
    out[k + 9] = min(1.0, eroded / 16.0)
    out[k + 10] = center_dev / (cols / 2.0)
    k += 11

    if next_kind > 0:
        out[k + next_kind - 1] = 1.0
    k += N_KINDS

    # 派生ヒューリスティック: greed, riskAversion, aggression, smoothness
    out[k + 0] = lines_n * lines_n
    out[k + 1] = maxh_n * maxh_n
    out[k + 2] = well_n * (1.0 - holes_n)
    out[k + 3] = 1.0 - bump_n


# ■ 順伝播: tanh 隠れ層 1 段 → (score, speed)
@njit(cache=True)
def policy_forward(params, inputs, hidden):
    n_in = inputs.shape[0]
    b1 = n_in * hidden
    w2 = b1 + hidden
    b2 = w2 + 2 * hidden

    score = params[b2]
    speed_z = params[b2 + 1]
    for h in range(hidden):
        s = params[b1 + h]
        base = h * n_in
        for i in range(n_in):
            s += params[base + i] * inputs[i]
        a = np.tanh(s)
        score += params[w2 + h] * a
        speed_z += params[w2 + hidden + h] * a
    return score, 0.5 * (np.tanh(speed_z) + 1.0)


# ■ 候補手の一括評価
@njit(cache=True)
def evaluate_placements(grid, rots, dims, xs, ys, rs, color, next_kind, params, hidden):
    rows, cols = grid.shape
    n = xs.shape[0]
    scores = np.empty(n, dtype=np.float64)
    speeds = np.empty(n, dtype=np.float64)
    feats = np.zeros(N_INPUTS, dtype=np.float64)
    for j in range(n):
        r = rs[j]
        h = dims[r, 0]
        w = dims[r, 1]
        sim, lines, eroded = place_and_clear(grid, rots[r], xs[j], ys[j], color)
        landing = rows - (ys[j] + h)
        center = abs((xs[j] + w / 2.0) - cols / 2.0)
        calc_features(sim, landing, lines, eroded, center, next_kind, feats)
        s, sp = policy_forward(params, feats, hidden)
        scores[j] = s
        speeds[j] = sp
    return scores, speeds


# ■ 到達可能な設置位置の BFS（状態 = (x, y, rot)）
#   同じ段で回転・左右を先に展開し、落下は次の段のキューへ回す。
#   経路は「上で回して寄せてから落とす」順になる。
@njit(cache=True)
def search_placements(grid, rots, start_x, start_y, start_rot):
    rows, cols = grid.shape
    ny = rows + SPAWN_MARGIN
    n_states = 4 * ny * cols
    visited = np.zeros(n_states, dtype=np.bool_)
    parent = np.full(n_states, -1, dtype=np.int64)
    action = np.full(n_states, -1, dtype=np.int64)
    cur = np.empty(n_states, dtype=np.int64)
    nxt = np.empty(n_states, dtype=np.int64)
    term = np.empty(n_states, dtype=np.int64)
    nterm = 0

    if (start_y < -SPAWN_MARGIN or start_x < 0 or start_x >= cols
            or check_collision(grid, rots[start_rot], start_x, start_y)):
        return term[:0], parent, action

    s0 = (start_rot * ny + start_y + SPAWN_MARGIN) * cols + start_x
    visited[s0] = True
    cur[0] = s0
    ncur = 1

    while ncur > 0:
        nnxt = 0
        head = 0
        while head < ncur:
            s = cur[head]
            head += 1
            x = s % cols
            t = s // cols
            y = t % ny - SPAWN_MARGIN
            r = t // ny
            shape = rots[r]

            # 回転（キック表の先頭から最初に入れた位置）
            nr = (r + 1) % 4
            for k in range(KICKS.shape[0]):
                nx = x + KICKS[k, 0]
                nyy = y + KICKS[k, 1]
                if nyy < -SPAWN_MARGIN:
                    continue
                if check_collision(grid, rots[nr], nx, nyy):
                    continue
                ns = (nr * ny + nyy + SPAWN_MARGIN) * cols + nx
                if not visited[ns]:
                    visited[ns] = True
                    parent[ns] = s
                    action[ns] = A_ROT
                    cur[ncur] = ns
                    ncur += 1
                break

            # 左右
            for a in range(2):
                nx = x - 1 if a == A_LEFT else x + 1
                if check_collision(grid, shape, nx, y):
                    continue
                ns = (r * ny + y + SPAWN_MARGIN) * cols + nx
                if not visited[ns]:
                    visited[ns] = True
                    parent[ns] = s
                    action[ns] = a
                    cur[ncur] = ns
                    ncur += 1

            # ソフトドロップ / 接地判定
            if check_collision(grid, shape, x, y + 1):
                term[nterm] = s
                nterm += 1
            else:
                ns = (r * ny + y + 1 + SPAWN_MARGIN) * cols + x
                if not visited[ns]:
                    visited[ns] = True
                    parent[ns] = s
                    action[ns] = A_DOWN
                    nxt[nnxt] = ns
                    nnxt += 1

        cur, nxt = nxt, cur
        ncur = nnxt

    return term[:nterm], parent, action


# ───────────────────────── 7-bag 列 ─────────────────────────
@njit(cache=True)
def lcg(x):
    return (x * 1664525 + 1013904223) & 0xFFFFFFFF


@njit(cache=True)
def bag_sequence(seed, length):
    out = np.empty(length, dtype=np.int64)
    bag = np.arange(1, N_KINDS + 1)
    rnd = seed & 0xFFFFFFFF
    for i in range(length):
        if i % N_KINDS == 0:
            for k in range(N_KINDS - 1, 0, -1):
                rnd = lcg(rnd)
                j = rnd % (k + 1)
                bag[k], bag[j] = bag[j], bag[k]
        out[i] = bag[i % N_KINDS]
    return out
