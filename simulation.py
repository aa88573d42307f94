# simulation.py – 制御メッセージの受付と、間引きした状態スナップショットの送出
from __future__ import annotations
import logging, time
from collections import deque

from evolution import EvolutionEngine
from messages import (Pause, Resume, Reset, ImportState, InjectGenome, SetSpeed,
                      TakeControl, ControlInput, KillAgent, ForceMutate, CONTROL_ACTIONS,
                      parse_message)
from snapshot import genome_from_payload, restore_snapshot

log = logging.getLogger(__name__)


def build_state_snapshot(engine: EvolutionEngine, heavy: bool = False,
                         boundary: bool = False, paused: bool = False) -> dict:
    """外部向け状態。heavy のときだけ系譜・ランキング・ゴースト・テレメトリ履歴を載せる"""
    stats = engine.stats()
    stats["paused"] = paused
    out = {
        "agents": [r.to_agent_state() for r in engine.runners],
        "stats": stats,
    }
    if heavy or boundary:
        out["lineage"] = [[n.to_dict() for n in nodes] for nodes in engine.lineage]
        out["leaderboard"] = engine.leaderboard.to_list()
        out["ghost"] = engine.ghost.to_dict() if engine.ghost is not None else None
        out["telemetryHistory"] = [f.to_dict() for f in engine.telemetry]
    if boundary and engine.timeline:
        out["endOfGenerationSnapshot"] = engine.timeline[-1].to_dict()
    return out


class SimulationActor:
    """単一スレッドの協調ループ。メッセージは tick バッチの合間にだけ適用する"""

    def __init__(self, engine: EvolutionEngine | None = None, emit=None,
                 emit_interval_ms: float = 50.0, heavy_interval_ms: float = 2000.0,
                 ticks_per_batch: int = 1, clock=time.monotonic):
        self.engine = engine or EvolutionEngine()
        self.emit = emit
        self.emit_interval_ms = emit_interval_ms
        self.heavy_interval_ms = heavy_interval_ms
        self.ticks_per_batch = ticks_per_batch
        self.clock = clock
        self.inbox = deque()
        self.paused = False
        self.controlled_id: str | None = None
        self._last_light = self._last_heavy = float("-inf")
        self._force = None          # 次のバッチで必ず送る（"light" / "heavy"）

    # ── 受信 ────────────────────────────────────
    def post(self, message):
        if isinstance(message, dict):
            message = parse_message(message)
        self.inbox.append(message)

    def drain(self):
        while self.inbox:
            self._apply(self.inbox.popleft())

    def _apply(self, msg):
        engine = self.engine
        if isinstance(msg, Pause):
            self.paused = True
            self._request("light")
        elif isinstance(msg, Resume):
            self.paused = False
        elif isinstance(msg, Reset):
            self._release_control()
            engine.reset()
            self._request("heavy")
        elif isinstance(msg, ImportState):
            self._release_control()
            restore_snapshot(engine, msg.snapshot)
            self._request("heavy")
        elif isinstance(msg, InjectGenome):
            if not isinstance(msg.genome, dict):
                log.warning("inject ignored: payload is %s", type(msg.genome).__name__)
                return
            try:
                g = genome_from_payload(msg.genome, engine.rng, engine.config.hidden_size,
                                        engine.sigma, engine.generation)
            except (ValueError, TypeError, AttributeError) as e:
                log.warning("inject ignored: %s", e)
                return
            engine.inject_genome(g)
        elif isinstance(msg, SetSpeed):
            self.ticks_per_batch = max(1, int(msg.ticks_per_batch))
        elif isinstance(msg, TakeControl):
            self._release_control()
            runner = engine.runner_by_id(msg.agent_id) if msg.agent_id else None
            if runner is not None:
                runner.controlled = True
                self.controlled_id = runner.id
        elif isinstance(msg, ControlInput):
            runner = self.controlled_runner()
            if runner is not None:
                runner.manual_input(CONTROL_ACTIONS[msg.action])
        elif isinstance(msg, KillAgent):
            runner = engine.runner_by_id(msg.agent_id)
            if runner is not None:
                runner.kill()
        elif isinstance(msg, ForceMutate):
            if msg.agent_id == self.controlled_id:
                self._release_control()
            if engine.force_mutate(msg.agent_id) is not None:
                self._request("light")
        else:
            raise TypeError(f"unsupported message {msg!r}")

    def controlled_runner(self):
        if self.controlled_id is None:
            return None
        return self.engine.runner_by_id(self.controlled_id)

    def _release_control(self):
        runner = self.controlled_runner()
        if runner is not None:
            runner.controlled = False
        self.controlled_id = None

    def _request(self, kind):
        if self._force != "heavy":
            self._force = kind

    # ── ループ ──────────────────────────────────
    def run_batch(self) -> dict | None:
        """メッセージ適用 → ticks_per_batch 回 tick → 必要なら送出"""
        self.drain()
        boundary = False
        if not self.paused:
            for _ in range(self.ticks_per_batch):
                if self.engine.step():
                    boundary = True
                    break
        return self._maybe_emit(boundary)

    def _maybe_emit(self, boundary: bool):
        now = self.clock() * 1000.0
        heavy = boundary or self._force == "heavy" or now - self._last_heavy >= self.heavy_interval_ms
        if not heavy and self._force is None and now - self._last_light < self.emit_interval_ms:
            return None
        snap = build_state_snapshot(self.engine, heavy=heavy, boundary=boundary, paused=self.paused)
        self._last_light = now
        if heavy:
            self._last_heavy = now
        self._force = None
        if self.emit is not None:
            self.emit(snap)
        return snap

    def run(self, generations: int | None = None, max_batches: int | None = None):
        """generations 世代ぶん（または max_batches 回）回す"""
        start = self.engine.generation
        batches = 0
        while True:
            if generations is not None and self.engine.generation - start >= generations:
                break
            if max_batches is not None and batches >= max_batches:
                break
            self.run_batch()
            batches += 1
