# es_train.py – ES 学習（ヘッドレス版）
from __future__ import annotations
import argparse, logging, pathlib, time

from config import EvolutionConfig
from evolution import EvolutionEngine
from snapshot import load_snapshot, save_snapshot

# ───────────────────────── パラメータ ─────────────────────────
GEN = 8
SNAPSHOT = 'es_snapshot.json'


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description='Tetris policy ES trainer')
    ap.add_argument('--config', type=pathlib.Path, help='JSON で EvolutionConfig を上書き')
    ap.add_argument('--generations', type=int, default=GEN)
    ap.add_argument('--population', type=int, default=None)
    ap.add_argument('--seed', type=int, default=None)
    ap.add_argument('--snapshot', type=pathlib.Path, default=pathlib.Path(SNAPSHOT))
    ap.add_argument('-v', '--verbose', action='store_true')
    return ap.parse_args(argv)


# ───────────────────────── main ──────────────────────────────
def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    cfg = EvolutionConfig.from_json(args.config) if args.config else EvolutionConfig()
    if args.population:
        cfg.population_size = args.population
    engine = EvolutionEngine(cfg, seed=args.seed)

    # 1) 前回のスナップショットがあれば続きから
    if args.snapshot.exists():
        if load_snapshot(engine, args.snapshot):
            print(f'Resumed from {args.snapshot} at generation {engine.generation}')
        else:
            print(f'Warning: {args.snapshot} load error -> fresh population')

    # 2) 進化ループ
    for _ in range(args.generations):
        t0 = time.time()
        rep = engine.run_generation()
        print(f"Gen {rep['generation']:03d}: best {rep['max']:.1f}, avg {rep['avg']:.1f}, "
              f"median {rep['median']:.1f}  sigma={rep['sigma']:.4f} "
              f"div={rep['diversity']:.1f} [{rep['stage']}/{rep['mode']}]"
              f"{'  !!! extinction' if rep['extinction'] else ''}  ({time.time() - t0:.1f}s)")

    # 3) 保存
    save_snapshot(engine, args.snapshot)
    print(f'Saved → {args.snapshot}')
    if engine.leaderboard.entries:
        top = engine.leaderboard.entries[0]
        print(f'Top genome {top.id}: score {top.score}, lines {top.lines}, level {top.level}')


if __name__ == '__main__':
    start_all = time.time()
    main()
    print(f'Total ES training time: {time.time() - start_all:.1f} sec')
