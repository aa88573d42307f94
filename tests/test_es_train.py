"""Tests for the headless trainer."""

import json

import es_train


def test_train_and_resume(tmp_path, capsys):
    cfg = tmp_path / "cfg.json"
    cfg.write_text(json.dumps({
        "population_size": 4,
        "runs_per_genome": 1,
        "hidden_size": 2,
        "curriculum": [{"name": "tiny", "min_score": 0, "gravity_scale": 1.0, "piece_cap": 3}],
        "game": {"garbage_rate": 0.0},
    }))
    snap = tmp_path / "snap.json"
    argv = ["--config", str(cfg), "--generations", "1", "--snapshot", str(snap), "--seed", "3"]

    es_train.main(argv)
    out = capsys.readouterr().out
    assert "Gen 001" in out
    assert snap.exists()
    assert json.loads(snap.read_text())["stats"]["generation"] == 2

    es_train.main(argv)
    out = capsys.readouterr().out
    assert "Resumed from" in out
    assert "Gen 002" in out
