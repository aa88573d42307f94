# novelty.py – 行動シグネチャの有界 FIFO アーカイブ
from __future__ import annotations
from collections import deque

import numpy as np


class NoveltyArchive:
    def __init__(self, max_size: int = 200, k: int = 5):
        self.k = k
        self.entries = deque(maxlen=max_size)

    def __len__(self):
        return len(self.entries)

    def novelty(self, signature, reference=None) -> float:
        """reference（既定はアーカイブ）への k 近傍平均距離"""
        ref = self._as_matrix(self.entries if reference is None else reference)
        if ref.shape[0] == 0:
            return 0.0
        d = np.linalg.norm(ref - np.asarray(signature, dtype=np.float64), axis=1)
        k = min(self.k, d.shape[0])
        return float(np.mean(np.partition(d, k - 1)[:k]))

    def novelty_scores(self, signatures):
        """個体群ぶんまとめて。アーカイブが空なら同世代の他個体と比べる"""
        sigs = self._as_matrix(signatures)
        out = np.zeros(sigs.shape[0], dtype=np.float64)
        for i, s in enumerate(sigs):
            if len(self.entries):
                out[i] = self.novelty(s)
            else:
                out[i] = self.novelty(s, np.delete(sigs, i, axis=0))
        return out

    def add(self, signature):
        self.entries.append(np.array(signature, dtype=np.float64))

    def add_most_novel(self, signatures, scores, count: int):
        for i in np.argsort(-np.asarray(scores), kind="stable")[:count]:
            self.add(signatures[i])

    @staticmethod
    def _as_matrix(rows):
        rows = list(rows)
        if not rows:
            return np.zeros((0, 0), dtype=np.float64)
        return np.vstack([np.asarray(r, dtype=np.float64) for r in rows])
