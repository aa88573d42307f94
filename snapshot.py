# snapshot.py – 永続スナップショットの書き出し / 復元（JSON ファイル保存つき）
from __future__ import annotations
import json, logging, pathlib

import numpy as np

from core import FEATURES
from genome import Genome, Provenance, new_genome_id
from policy import (PolicySummary, create_seed_params, create_random_params,
                    param_count, summarize_policy)
from records import (now_ms, LineageNode, TelemetryFrame, LeaderboardEntry,
                     GhostPlayback, GenerationSnapshot)

log = logging.getLogger(__name__)

# 旧形式 {weights: {...}} の重み名 → 入力特徴
LEGACY_WEIGHTS = {
    "height": "aggregateHeight",
    "lines": "linesCleared",
    "holes": "holes",
    "bumpiness": "bumpiness",
    "maxHeight": "maxHeight",
    "rowTransitions": "rowTransitions",
    "colTransitions": "colTransitions",
    "wells": "wells",
    "landingHeight": "landingHeight",
    "erodedCells": "erodedCells",
    "centerDev": "centerDev",
}


def legacy_params(weights: dict, rng, hidden: int):
    """旧ヒューリスティック重みをシード方策の隠れユニット 0 に写す"""
    p = create_seed_params(rng, hidden)
    for old, feat in LEGACY_WEIGHTS.items():
        if old in weights:
            p[FEATURES.index(feat)] = float(weights[old])
    return p


def genome_from_payload(d: dict, rng, hidden: int, sigma: float = 0.0, generation: int = 1) -> Genome:
    """外部から来たゲノム 1 件。params が壊れていれば乱数で作り直して imported 扱い"""
    gid = str(d.get("id") or new_genome_id())
    gen = int(d.get("generation", generation))
    parents = tuple(str(p) for p in d.get("parents") or ())

    if "params" not in d and isinstance(d.get("weights"), dict):
        params = legacy_params(d["weights"], rng, hidden)
        return Genome(gid, params, gen, summarize_policy(params, sigma), parents, Provenance.IMPORTED)

    try:
        params = np.asarray(d["params"], dtype=np.float64)
        ok = params.shape == (param_count(hidden),) and bool(np.all(np.isfinite(params)))
    except (KeyError, TypeError, ValueError):
        ok = False
    if not ok:
        log.warning("genome %s: unusable params, resampled", gid)
        params = create_random_params(rng, hidden)
        return Genome(gid, params, gen, summarize_policy(params, sigma), parents, Provenance.IMPORTED)

    try:
        provenance = Provenance(d.get("provenance", Provenance.IMPORTED.value))
    except ValueError:
        provenance = Provenance.IMPORTED
    if isinstance(d.get("summary"), dict):
        summary = PolicySummary.from_dict(d["summary"])
    else:
        summary = summarize_policy(params, sigma)
    return Genome(gid, params, gen, summary, parents, provenance)


# ───────────────────────── 書き出し ─────────────────────────
def export_snapshot(engine) -> dict:
    return {
        "population": [r.genome.to_dict() for r in engine.runners],
        "stats": engine.stats(),
        "leaderboard": engine.leaderboard.to_list(),
        "lineage": [[n.to_dict() for n in nodes] for nodes in engine.lineage],
        "telemetryHistory": [f.to_dict() for f in engine.telemetry],
        "ghost": engine.ghost.to_dict() if engine.ghost is not None else None,
        "timeline": [s.to_dict() for s in engine.timeline],
        "history": [dict(rec) for rec in engine.logbook],
        "mutationRate": float(engine.sigma),
        "sigma": float(engine.sigma),
        "stepSize": float(engine.step_size),
        "stagnationCount": int(engine.stagnation_count),
        "bestEverScore": int(engine.best_ever_score),
        "timestamp": now_ms(),
    }


# ───────────────────────── 復元 ─────────────────────────
def restore_snapshot(engine, data) -> bool:
    """data から個体群を作り直す。読めなければ警告して新規個体群（例外は投げない）"""
    cfg = engine.config
    try:
        if not isinstance(data, dict) or not isinstance(data.get("population"), list):
            raise ValueError("snapshot has no population list")
        stats = data.get("stats") or {}
        generation = int(stats.get("generation", 1))
        sigma = float(data.get("sigma", data.get("mutationRate", cfg.sigma_init)))
        step_size = float(data.get("stepSize", cfg.lr_init))
        stagnation = int(data.get("stagnationCount", 0))
        if not (np.isfinite(sigma) and np.isfinite(step_size)):
            raise ValueError("non-finite sigma or step size")
        genomes = [genome_from_payload(g, engine.rng, cfg.hidden_size, sigma, generation)
                   for g in data["population"]]
        leaderboard = [LeaderboardEntry.from_dict(e) for e in data.get("leaderboard") or []]
        lineage = [[LineageNode.from_dict(n) for n in nodes] for nodes in data.get("lineage") or []]
        telemetry = [TelemetryFrame.from_dict(f) for f in data.get("telemetryHistory") or []]
        timeline = [GenerationSnapshot.from_dict(s) for s in data.get("timeline") or []]
        ghost = GhostPlayback.from_dict(data["ghost"]) if data.get("ghost") else None
        history = [dict(rec) for rec in data.get("history") or []]
        best_fit = stats.get("bestEverFitness")
        best_fit = None if best_fit is None else float(best_fit)
        best_score = int(data.get("bestEverScore", max((e.score for e in leaderboard), default=0)))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        log.warning("snapshot unreadable (%s); starting a fresh population", e)
        engine.reset()
        return False

    engine.reset()
    engine.sigma = max(cfg.sigma_floor, min(cfg.sigma_max, sigma))
    engine.step_size = step_size
    engine.stagnation_count = max(0, stagnation)
    engine.best_ever_fitness = best_fit
    engine.best_ever_score = best_score
    engine.advance_curriculum()
    for e in leaderboard:
        engine.leaderboard.update(e)
    engine.lineage.extend(lineage)
    engine.telemetry.extend(telemetry)
    engine.timeline.extend(timeline)
    engine.ghost = ghost
    for rec in history:
        engine.logbook.record(**rec)
    engine.install_population(genomes, generation)
    log.info("restored generation %d with %d imported genomes (population %d)",
             generation, len(genomes), len(engine.runners))
    return True


# ───────────────────────── ファイル ─────────────────────────
def save_snapshot(engine, path):
    path = pathlib.Path(path)
    path.write_text(json.dumps(export_snapshot(engine)))
    return path


def load_snapshot(engine, path) -> bool:
    path = pathlib.Path(path)
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        log.warning("cannot read snapshot %s (%s); starting a fresh population", path, e)
        engine.reset()
        return False
    return restore_snapshot(engine, data)
