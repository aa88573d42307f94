# records.py – 系譜・テレメトリ・ランキング・ゴースト（外部向けの読み取り専用レコード）
from __future__ import annotations
import time
from dataclasses import dataclass, field


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LineageNode:
    id: str
    generation: int
    parents: list
    fitness: float
    score: int
    lines: int
    level: int
    novelty: float
    provenance: str
    signature: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"id": self.id, "generation": self.generation, "parents": list(self.parents),
                "fitness": self.fitness, "score": self.score, "lines": self.lines,
                "level": self.level, "novelty": self.novelty, "provenance": self.provenance,
                "signature": list(self.signature)}

    @staticmethod
    def from_dict(d) -> "LineageNode":
        return LineageNode(str(d["id"]), int(d["generation"]), list(d.get("parents", [])),
                           float(d.get("fitness", 0.0)), int(d.get("score", 0)),
                           int(d.get("lines", 0)), int(d.get("level", 1)),
                           float(d.get("novelty", 0.0)), str(d.get("provenance", "imported")),
                           list(d.get("signature", [])))


@dataclass
class TelemetryFrame:
    generation: int
    avg_score: float
    avg_lines: float
    avg_level: float
    max_score: int
    max_lines: int
    avg_holes: float
    avg_bumpiness: float
    avg_max_height: float
    avg_wells: float
    hole_density: float
    sigma: float
    diversity: float
    step_size: float
    timestamp: int = field(default_factory=now_ms)

    _KEYS = (("generation", "generation"), ("avg_score", "avgScore"), ("avg_lines", "avgLines"),
             ("avg_level", "avgLevel"), ("max_score", "maxScore"), ("max_lines", "maxLines"),
             ("avg_holes", "avgHoles"), ("avg_bumpiness", "avgBumpiness"),
             ("avg_max_height", "avgMaxHeight"), ("avg_wells", "avgWells"),
             ("hole_density", "holeDensity"), ("sigma", "sigma"), ("diversity", "diversity"),
             ("step_size", "stepSize"), ("timestamp", "timestamp"))

    def to_dict(self) -> dict:
        return {wire: getattr(self, attr) for attr, wire in self._KEYS}

    @classmethod
    def from_dict(cls, d) -> "TelemetryFrame":
        return cls(**{attr: d[wire] for attr, wire in cls._KEYS if wire in d})


@dataclass
class LeaderboardEntry:
    id: str
    score: int
    level: int
    lines: int
    generation: int
    provenance: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {"id": self.id, "score": self.score, "level": self.level, "lines": self.lines,
                "generation": self.generation, "provenance": self.provenance,
                "timestamp": self.timestamp}

    @staticmethod
    def from_dict(d) -> "LeaderboardEntry":
        return LeaderboardEntry(str(d["id"]), int(d.get("score", 0)), int(d.get("level", 1)),
                                int(d.get("lines", 0)), int(d.get("generation", 1)),
                                str(d.get("provenance", d.get("bornMethod", "imported"))),
                                int(d.get("timestamp", now_ms())))


class Leaderboard:
    """id ごとの最高素点、上位 size 件"""

    def __init__(self, size: int = 15):
        self.size = size
        self.entries: list[LeaderboardEntry] = []

    def update(self, entry: LeaderboardEntry):
        for i, e in enumerate(self.entries):
            if e.id == entry.id:
                if entry.score > e.score:
                    self.entries[i] = entry
                break
        else:
            self.entries.append(entry)
        self.entries.sort(key=lambda e: e.score, reverse=True)
        del self.entries[self.size:]

    def to_list(self):
        return [e.to_dict() for e in self.entries]


@dataclass
class GhostFrame:
    grid: list
    current_piece: dict | None = None

    def to_dict(self) -> dict:
        return {"grid": self.grid, "currentPiece": self.current_piece}

    @staticmethod
    def from_dict(d) -> "GhostFrame":
        return GhostFrame(d["grid"], d.get("currentPiece"))


@dataclass
class GhostPlayback:
    id: str
    generation: int
    score: int
    frames: list
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {"id": self.id, "generation": self.generation, "score": self.score,
                "frames": [f.to_dict() for f in self.frames], "createdAt": self.created_at}

    @staticmethod
    def from_dict(d) -> "GhostPlayback":
        return GhostPlayback(str(d["id"]), int(d["generation"]), int(d["score"]),
                             [GhostFrame.from_dict(f) for f in d.get("frames", [])],
                             int(d.get("createdAt", now_ms())))


@dataclass
class GenerationSnapshot:
    generation: int
    agent_id: str
    score: int
    lines: int
    grid: list
    current_piece: dict | None = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        return {"generation": self.generation, "agentId": self.agent_id, "score": self.score,
                "lines": self.lines, "grid": self.grid, "currentPiece": self.current_piece,
                "timestamp": self.timestamp}

    @staticmethod
    def from_dict(d) -> "GenerationSnapshot":
        return GenerationSnapshot(int(d["generation"]), str(d["agentId"]), int(d["score"]),
                                  int(d["lines"]), d["grid"], d.get("currentPiece"),
                                  int(d.get("timestamp", now_ms())))
