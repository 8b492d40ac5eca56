"""Unit tests for watch mode: file watching, shutdown and session reconciliation."""

import threading
import time

import pytest

from caskit.build.result import BuildResult, Diagnostic
from caskit.build.session import SessionSnapshot, StageState, WatchSession
from caskit.build.watcher import FileWatcher, ShutdownScope, diff_snapshots, snapshot_paths, watch_stage


def _result(stage, success=True):
    errors = [] if success else [Diagnostic(code="X", message="failed", stage=stage)]
    return BuildResult(success=success, errors=errors, stage=stage)


class TestWatchSession:
    """Tests for WatchSession."""

    def test_settles_after_all_stages_report(self):
        settled = []
        event = threading.Event()

        def on_settled(snapshot: SessionSnapshot) -> None:
            settled.append(snapshot)
            event.set()

        session = WatchSession(["compile", "bundle"], on_settled, debounce=0.05)
        session.report(_result("compile"))
        assert session.state("bundle") == StageState.PENDING

        session.report(_result("bundle"))

        assert event.wait(5)
        assert settled[0].generation == 1
        assert settled[0].success
        assert settled[0].states == {"compile": StageState.OK, "bundle": StageState.OK}

    def test_does_not_settle_while_a_stage_runs(self):
        event = threading.Event()
        session = WatchSession(["compile", "bundle"], lambda snapshot: event.set(), debounce=0.05)

        session.report(_result("compile"))
        session.mark_running("bundle")

        assert not event.wait(0.3)
        assert session.generation == 0
        session.close()

    def test_failed_stage_collects_errors(self):
        settled = []
        event = threading.Event()

        def on_settled(snapshot):
            settled.append(snapshot)
            event.set()

        session = WatchSession(["compile", "bundle"], on_settled, debounce=0.05)
        session.report(_result("compile", success=False))
        session.report(_result("bundle"))

        assert event.wait(5)
        assert not settled[0].success
        assert settled[0].states["compile"] == StageState.FAILED
        assert [e.code for e in settled[0].errors] == ["X"]

    def test_new_report_restarts_debounce(self):
        event = threading.Event()
        session = WatchSession(["compile"], lambda snapshot: event.set(), debounce=0.2)

        session.report(_result("compile"))
        time.sleep(0.1)
        session.mark_running("compile")
        time.sleep(0.2)

        assert not event.is_set()
        session.report(_result("compile"))
        assert event.wait(5)

    def test_closed_session_never_settles(self):
        event = threading.Event()
        session = WatchSession(["compile"], lambda snapshot: event.set(), debounce=0.05)

        session.close()
        session.report(_result("compile"))

        assert not event.wait(0.2)

    def test_unknown_stage(self):
        session = WatchSession(["compile"], lambda snapshot: None)
        with pytest.raises(KeyError):
            session.report(_result("assets"))


class TestShutdownScope:
    """Tests for ShutdownScope."""

    def test_close_runs_callbacks_in_reverse_order(self):
        order = []
        scope = ShutdownScope()
        scope.register("first", lambda: order.append("first"))
        scope.register("second", lambda: order.append("second"))

        scope.close()
        scope.close()

        assert order == ["second", "first"]
        assert scope.closed
        assert scope.wait(0)

    def test_register_after_close_runs_immediately(self):
        called = []
        scope = ShutdownScope()
        scope.close()

        scope.register("late", lambda: called.append(True))

        assert called == [True]

    def test_hanging_callback_is_abandoned(self):
        release = threading.Event()
        scope = ShutdownScope(close_timeout=0.1)
        scope.register("hang", release.wait)

        started = time.monotonic()
        scope.close()

        assert time.monotonic() - started < 2
        release.set()

    def test_failing_callback_does_not_stop_others(self):
        called = []
        scope = ShutdownScope()
        scope.register("ok", lambda: called.append(True))

        def fail():
            raise RuntimeError("boom")

        scope.register("fail", fail)
        scope.close()

        assert called == [True]

    def test_context_manager(self):
        with ShutdownScope() as scope:
            pass
        assert scope.closed


def test_snapshot_diff(tmp_path):
    """Test that added, modified and removed files are detected."""
    (tmp_path / "a.ts").write_text("a", encoding="utf-8")
    (tmp_path / "b.ts").write_text("b", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("x", encoding="utf-8")

    before = snapshot_paths([tmp_path])
    assert tmp_path / "node_modules" / "dep.js" not in before

    (tmp_path / "a.ts").write_text("changed", encoding="utf-8")
    (tmp_path / "b.ts").unlink()
    (tmp_path / "c.ts").write_text("c", encoding="utf-8")
    after = snapshot_paths([tmp_path])

    assert diff_snapshots(before, after) == sorted([tmp_path / "a.ts", tmp_path / "b.ts", tmp_path / "c.ts"])


def test_file_watcher_detects_change(tmp_path):
    """Test that the watcher calls back after a file changes."""
    source = tmp_path / "index.ts"
    source.write_text("one", encoding="utf-8")
    changed = []
    event = threading.Event()

    def on_change(paths):
        changed.extend(paths)
        event.set()

    watcher = FileWatcher("test", [tmp_path], on_change, interval=0.05).start()
    try:
        source.write_text("two, longer", encoding="utf-8")
        assert event.wait(5)
    finally:
        watcher.close()

    assert source in changed
    assert not watcher.running


def test_watch_stage_reports_initial_run_and_errors(tmp_path):
    """Test that a raising stage becomes a failed, tagged result."""
    results = []
    event = threading.Event()

    def run():
        raise RuntimeError("stage crashed")

    def on_result(result):
        results.append(result)
        event.set()

    with ShutdownScope() as scope:
        watch_stage("assets", [tmp_path], run, on_result, scope, interval=0.05)
        assert event.wait(5)

    assert results[0].stage == "assets"
    assert not results[0].success
    assert results[0].errors[0].code == "BUILD_FAILED"
    assert "stage crashed" in results[0].errors[0].message
