# messages.py – シミュレーションへの制御メッセージ（閉じた集合）
from __future__ import annotations
from dataclasses import dataclass

# 手動操作ボタン → GameRunner の入力
CONTROL_ACTIONS = {"LEFT": "L", "RIGHT": "R", "DOWN": "D", "ROTATE": "ROT", "DROP": "DROP"}


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class ImportState:
    snapshot: object


@dataclass(frozen=True)
class InjectGenome:
    genome: object


@dataclass(frozen=True)
class SetSpeed:
    ticks_per_batch: int


@dataclass(frozen=True)
class TakeControl:
    agent_id: str | None


@dataclass(frozen=True)
class ControlInput:
    action: str

    def __post_init__(self):
        if self.action not in CONTROL_ACTIONS:
            raise ValueError(f"unknown control action {self.action!r}")


@dataclass(frozen=True)
class KillAgent:
    agent_id: str


@dataclass(frozen=True)
class ForceMutate:
    agent_id: str


Message = (Pause | Resume | Reset | ImportState | InjectGenome | SetSpeed
           | TakeControl | ControlInput | KillAgent | ForceMutate)

_WIRE = {
    "PAUSE": lambda p: Pause(),
    "RESUME": lambda p: Resume(),
    "RESET": lambda p: Reset(),
    # 辞書でない中身はそのまま渡し、受け側で新規個体群 / 無視に落とす
    "IMPORT_STATE": lambda p: ImportState(dict(p) if isinstance(p, dict) else p),
    "INJECT_GENOME": lambda p: InjectGenome(dict(p) if isinstance(p, dict) else p),
    "SET_SPEED": lambda p: SetSpeed(max(1, int(p))),
    "TAKE_CONTROL": lambda p: TakeControl(None if p is None else str(p)),
    "CONTROL_INPUT": lambda p: ControlInput(str(p)),
    "KILL_AGENT": lambda p: KillAgent(str(p)),
    "FORCE_MUTATE": lambda p: ForceMutate(str(p)),
}


def parse_message(data: dict) -> Message:
    """{"type": ..., "payload": ...} 形式をメッセージに。未知の type は ValueError"""
    kind = data.get("type")
    if kind not in _WIRE:
        raise ValueError(f"unknown message type {kind!r}")
    return _WIRE[kind](data.get("payload"))
