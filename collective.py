# collective.py – 行動アーキタイプの重心で ES 平均を引っ張る / 押し返す
from __future__ import annotations
import logging
from dataclasses import dataclass, field

import numpy as np

from genome import Genome, Provenance
from policy import summarize_policy

log = logging.getLogger(__name__)


@dataclass
class Archetype:
    name: str
    description: str
    vector: np.ndarray
    attributes: dict
    dominance: float = 1.0
    members: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description,
                "attributes": dict(self.attributes), "dominance": self.dominance,
                "members": list(self.members)}


@dataclass
class CollectiveInsights:
    archetypes: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.archetypes and not self.failures


# (名前, 説明, ソートキー（大きいほど上位）, 上位割合)
SUCCESS_MODES = (
    ("The Architect", "line clears per piece",
     lambda s: s.lines / max(1, s.pieces), 0.15),
    ("The Scorer", "raw score",
     lambda s: s.score, 0.15),
    ("The Intellect", "board cleanliness",
     lambda s: -(s.avg_holes + s.avg_bumpiness / 5.0), 0.15),
)
FAILURE_MODES = (
    ("The Clutterer", "most holes",
     lambda s: s.avg_holes, 0.10),
    ("The Topper", "highest stacks",
     lambda s: s.avg_max_height, 0.10),
)


def _centroid(runners):
    return np.mean(np.stack([r.genome.params for r in runners]), axis=0)


def _build(name, description, key, frac, live, stats, pop_avg, failure):
    order = sorted(range(len(live)), key=lambda i: key(stats[i]), reverse=True)
    top = [live[i] for i in order[:max(2, int(len(live) * frac))]]
    vector = _centroid(top)
    member_avg = float(np.mean([stats[order[j]].score for j in range(len(top))]))
    # 平均に対する相対成績（失敗側は「どれだけ悪いか」）
    if failure:
        dominance = pop_avg / max(1.0, member_avg)
    else:
        dominance = member_avg / max(1.0, pop_avg)
    return Archetype(name, description, vector,
                     summarize_policy(vector, 0.0).sensitivities,
                     float(np.clip(dominance, 0.1, 3.0)),
                     [r.genome.id for r in top])


def extract_insights(runners, min_pieces: int = 10, min_agents: int = 5) -> CollectiveInsights:
    live = [r for r in runners if r.total_pieces > min_pieces]
    if len(live) < min_agents:
        return CollectiveInsights()
    stats = [r.aggregate_stats() for r in live]
    pop_avg = float(np.mean([r.aggregate_stats().score for r in runners]))

    return CollectiveInsights(
        archetypes=[_build(*m, live, stats, pop_avg, False) for m in SUCCESS_MODES],
        failures=[_build(*m, live, stats, pop_avg, True) for m in FAILURE_MODES],
    )


def collective_learning_rate(generation: int, base: float = 0.05,
                             decay: float = 0.97, floor: float = 0.005) -> float:
    return max(floor, base * decay ** max(0, generation - 1))


def apply_collective_learning(mean, insights: CollectiveInsights, learning_rate: float = 0.05):
    """成功側へ alpha、失敗側から beta(=0.4·lr) だけ動かした新しい平均"""
    if insights.empty:
        return mean
    mean = np.asarray(mean, dtype=np.float64)
    new = mean.copy()
    for arc in insights.archetypes:
        alpha = learning_rate * arc.dominance / len(insights.archetypes)
        new += (arc.vector - mean) * alpha
    for arc in insights.failures:
        beta = learning_rate * 0.4 * arc.dominance / len(insights.failures)
        new += (mean - arc.vector) * beta
    return new


def cultural_seeds(insights: CollectiveInsights, generation: int, sigma: float, count: int):
    """支配度の高い成功アーキタイプの重心をそのまま次世代へ"""
    ranked = sorted(insights.archetypes, key=lambda a: a.dominance, reverse=True)[:count]
    seeds = []
    for arc in ranked:
        seeds.append(Genome.create(arc.vector, generation, Provenance.SEED,
                                   parents=arc.members, sigma=sigma))
        log.debug("cultural seed from %s (dominance %.2f)", arc.name, arc.dominance)
    return seeds
