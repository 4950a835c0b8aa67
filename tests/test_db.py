from dataclasses import replace

from devenv import db


def test_log_event_writes_row(isolated_db):
    db.init_db()
    db.log_event("info", "Container started", owner="p1", resource_id="abc")
    db.log_event("WARN", "Something else", owner="p2")

    rows = db.latest_events(limit=10, owner="p1")
    assert len(rows) == 1
    assert rows[0]["level"] == "INFO"
    assert rows[0]["message"] == "Container started"
    assert rows[0]["resource_id"] == "abc"
    assert [r["owner"] for r in db.latest_events()] == ["p2", "p1"]


def test_level_threshold_filters(monkeypatch):
    monkeypatch.setattr(db, "settings", replace(db.settings, log_level="WARN"))
    db.log_event("DEBUG", "noise")
    db.log_event("ERROR", "boom")
    assert [r["message"] for r in db.latest_events()] == ["boom"]


def test_directory_db_path_gets_a_file_inside(tmp_path, monkeypatch):
    folder = tmp_path / "data"
    folder.mkdir()
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(folder)))
    db.log_event("INFO", "hello")
    assert (folder / "devenv.db").exists()
