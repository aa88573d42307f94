# genome.py – 方策パラメータ + 系譜メタデータ（生成後は不変）
from __future__ import annotations
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np

from policy import PolicySummary, summarize_policy


class Provenance(str, Enum):
    SEED = "seed"
    ES_SAMPLE = "es-sample"
    ELITE = "elite"
    IMPORTED = "imported"
    IMMIGRANT = "immigrant"
    HALL_OF_FAME = "hall-of-fame"


def new_genome_id() -> str:
    return uuid.uuid4().hex[:10]


@dataclass(frozen=True, eq=False)
class Genome:
    id: str
    params: np.ndarray
    generation: int
    summary: PolicySummary = field(default_factory=PolicySummary)
    parents: tuple = ()
    provenance: Provenance = Provenance.SEED

    def __post_init__(self):
        params = np.array(self.params, dtype=np.float64)
        params.flags.writeable = False
        object.__setattr__(self, "params", params)
        object.__setattr__(self, "parents", tuple(str(p) for p in self.parents))
        object.__setattr__(self, "provenance", Provenance(self.provenance))

    @classmethod
    def create(cls, params, generation: int, provenance: Provenance,
               parents=(), sigma: float = 0.0) -> "Genome":
        return cls(new_genome_id(), params, generation,
                   summarize_policy(params, sigma), tuple(parents), provenance)

    def clone(self, **changes) -> "Genome":
        """値コピー（params も複製される）"""
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "generation": int(self.generation),
            "params": [float(v) for v in self.params],
            "summary": self.summary.to_dict(),
            "parents": list(self.parents),
            "provenance": self.provenance.value,
        }

