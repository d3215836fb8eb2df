# tests/unit/test_history.py

from __future__ import annotations
import sys, json
from pathlib import Path

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from labforge.storage.history import RunHistory


def test_in_memory_history_keeps_latest_done_output():
    h = RunHistory(root_dir=None)
    h.record_stage(1, "Create", "labs v1")
    h.record_stage(2, "Restructure", "partial", status="cancelled")
    h.record_stage(1, "Create", "labs v2")
    assert h.outputs == {1: "labs v2"}
    assert h.latest() == (1, "labs v2")
    assert h.path is None
    assert [e["type"] for e in h.entries()] == ["header", "stage", "stage", "stage"]


def test_clear_outputs():
    h = RunHistory()
    h.record_stage(1, "Create", "x")
    h.clear_outputs()
    assert h.outputs == {}
    assert h.latest() is None
    assert h.entries()[-1]["type"] == "reset"


def test_file_backed_writes_and_resume(tmp_path: Path):
    h = RunHistory(root_dir=tmp_path, header_meta={"provider": "ollama"})
    rid = h.run_id
    h.record_stage(1, "Create", "one")
    h.record_stage(3, "Format", "three")
    h.record_stage(4, "Export", "boom", status="error")

    # File exists with header + three stage records
    path = tmp_path / f"{rid}.jsonl"
    assert path == h.path
    lines = [json.loads(x) for x in path.read_text(encoding="utf-8").splitlines()]
    assert lines[0]["type"] == "header"
    assert lines[0]["meta"] == {"provider": "ollama"}
    assert [x["agent_id"] for x in lines[1:]] == [1, 3, 4]

    # Resume from same run id
    h2 = RunHistory(run_id=rid, root_dir=tmp_path)
    assert h2.outputs == {1: "one", 3: "three"}
    assert h2.latest() == (3, "three")


def test_resume_after_reset(tmp_path: Path):
    h = RunHistory(run_id="run-1", root_dir=tmp_path)
    h.record_stage(1, "Create", "old")
    h.clear_outputs()
    h.record_stage(2, "Restructure", "new")
    assert RunHistory(run_id="run-1", root_dir=tmp_path).outputs == {2: "new"}
