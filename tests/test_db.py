from dpr import db
from dpr.runtime import ReconciliationResult


def test_results_are_appended_newest_first():
    db.record_result(ReconciliationResult("startup", "applied", "installed 1 route(s)", routes=1, digest="abc"))
    db.record_result(ReconciliationResult("start:x", "skipped-container", "invalid labels", container="x"))
    db.record_result(ReconciliationResult("start:x", "rejected", "nginx -t failed"))

    rows = db.latest_results(10)
    assert [r.outcome for r in rows] == ["rejected", "skipped-container", "applied"]
    assert rows[1].container == "x"
    assert rows[2].routes == 1
    assert rows[2].digest == "abc"
    assert [r.outcome for r in db.latest_results(10, outcome="applied")] == ["applied"]


def test_log_event_is_stored_and_levels_normalised():
    db.log_event("warn", "event stream ended", container="web")
    ev = db.latest_events(1)[0]
    assert ev["level"] == "WARN"
    assert ev["container"] == "web"
    assert ev["message"] == "event stream ended"


def test_directory_db_path_gets_a_file_inside(tmp_path, monkeypatch):
    from dataclasses import replace

    target = tmp_path / "mounted"
    target.mkdir()
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(target)))
    db.init_db()
    db.log_event("INFO", "hello")
    assert (target / "dpr.db").exists()
