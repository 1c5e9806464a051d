import json
import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cli import main
from schema import LATEST_VERSION


def run(tmp_path, *args):
    db = str(tmp_path / "cli.db")
    settings = str(tmp_path / "settings.yaml")
    main(["--settings", settings, "--db", db, *args])
    return db


def test_migrate(tmp_path, capsys):
    db = run(tmp_path, "migrate")
    assert os.path.exists(db)
    out = capsys.readouterr().out
    assert f"schema version {LATEST_VERSION} (latest {LATEST_VERSION})" in out


def test_seed_and_resolve(tmp_path, capsys):
    records = tmp_path / "exercises.json"
    records.write_text(
        json.dumps([{"id": "Zercher_Squat", "name": "Zercher Squat", "equipment": "barbell"}]),
        encoding="utf-8",
    )
    run(tmp_path, "seed", str(records), "--version", "2026-01")
    first = json.loads(capsys.readouterr().out)
    assert first == {"status": "seeded", "count": 1, "added": 1, "merged": 0}

    run(tmp_path, "seed", str(records), "--version", "2026-01")
    assert json.loads(capsys.readouterr().out)["status"] == "skipped"

    run(tmp_path, "resolve", "zercher squats")
    resolved = json.loads(capsys.readouterr().out)
    assert resolved["status"] == "resolved"
    assert resolved["name"] == "Zercher Squat"


def test_seed_rejects_non_list(tmp_path):
    records = tmp_path / "bad.json"
    records.write_text(json.dumps({"name": "Squat"}), encoding="utf-8")
    with pytest.raises(ValueError):
        run(tmp_path, "seed", str(records))


def test_backup_restore_and_dump(tmp_path, capsys):
    db = run(tmp_path, "migrate")
    backup = str(tmp_path / "backup.db")
    run(tmp_path, "backup", backup)
    assert os.path.exists(backup)

    os.remove(db)
    run(tmp_path, "restore", backup)
    assert os.path.exists(db)

    output = tmp_path / "dump.json"
    run(tmp_path, "dump", str(output))
    data = json.loads(output.read_text(encoding="utf-8"))
    assert len(data["workout_spaces"]) == 1
    assert any(row["name"] == "Bench Press" for row in data["exercises"])
