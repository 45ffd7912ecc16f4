"""
tests/unit/test_digest_operational.py — Worker, runtime state, service, config.

Coverage:
  Ops-1: Runtime state read/write + empty-state fallback
  Ops-2: DigestWorker tick order, dispatch cadence, failure containment,
         start/stop, double-start guard
  Ops-3: DigestService facade (submit → run_once → dispatch), shutdown warning
  Ops-4: Config defaults + settings overrides, overrides file reload
"""
from __future__ import annotations

import json
import os
import tempfile
import time
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

from core.digest.delivery import LoggingSender, StaticDirectory
from core.digest.events import NullEventLogger
from core.digest.store import DigestStore, MemoryBackend
from core.digest.worker import DigestWorker


class FakeClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current


# ═══════════════════════════════════════════════════════════════════════════════
# Ops-1: Runtime State
# ═══════════════════════════════════════════════════════════════════════════════

class TestRuntimeStateReadWrite(unittest.TestCase):
    """core/digest/runtime_state.py — persistent state JSON."""

    def setUp(self):
        self._dir = tempfile.mkdtemp()
        self._path = os.path.join(self._dir, "digest_state.json")

    def _with_path(self):
        return patch("core.digest.runtime_state._state_path", return_value=self._path)

    def test_get_state_missing_file_returns_empty(self):
        from core.digest.runtime_state import get_state
        with self._with_path():
            s = get_state()
        self.assertEqual(s["schema_version"], 1)
        self.assertEqual(s["drain"]["status"], "never")
        self.assertEqual(s["dispatch"]["status"], "never")

    def test_update_cycle_writes_to_disk(self):
        from core.digest.runtime_state import get_state, update_cycle
        with self._with_path():
            ok = update_cycle("drain", status="ok", duration_s=0.2, drained=4, appended=4)
            self.assertTrue(ok)
            s = get_state()
        self.assertEqual(s["drain"]["status"], "ok")
        self.assertEqual(s["drain"]["drained"], 4)
        self.assertIsNotNone(s["drain"]["last_run"])
        with open(self._path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f)["drain"]["appended"], 4)

    def test_cycles_are_independent(self):
        from core.digest.runtime_state import get_state, update_cycle
        with self._with_path():
            update_cycle("drain", status="ok")
            update_cycle("dispatch", status="error", reason="clock")
            s = get_state()
        self.assertEqual(s["drain"]["status"], "ok")
        self.assertEqual(s["dispatch"]["reason"], "clock")

    def test_unknown_cycle_rejected(self):
        from core.digest.runtime_state import update_cycle
        with self._with_path():
            with self.assertRaises(ValueError):
                update_cycle("weekly", status="ok")

    def test_corrupt_state_file_returns_empty(self):
        from core.digest.runtime_state import get_state
        with open(self._path, "w", encoding="utf-8") as f:
            f.write("{{{")
        with self._with_path(), patch("core.digest.runtime_state.log_warn"):
            s = get_state()
        self.assertEqual(s["drain"]["status"], "never")

    def test_partial_state_normalized(self):
        from core.digest.runtime_state import get_state
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump({"drain": {"status": "ok"}}, f)
        with self._with_path():
            s = get_state()
        self.assertEqual(s["drain"]["status"], "ok")
        self.assertIsNone(s["drain"]["last_run"])
        self.assertEqual(s["dispatch"]["status"], "never")

    def test_no_tmp_files_left(self):
        from core.digest.runtime_state import update_cycle
        with self._with_path():
            update_cycle("drain", status="ok")
        self.assertEqual(os.listdir(self._dir), ["digest_state.json"])


# ═══════════════════════════════════════════════════════════════════════════════
# Ops-2: Worker
# ═══════════════════════════════════════════════════════════════════════════════

class TestDigestWorker(unittest.TestCase):

    def _worker(self, drainer=None, dispatcher=None, **kwargs):
        drainer = drainer or MagicMock()
        dispatcher = dispatcher or MagicMock()
        if not isinstance(drainer.run_once.return_value, dict):
            drainer.run_once.return_value = {"drained": 0}
        if not isinstance(dispatcher.run_once.return_value, dict):
            dispatcher.run_once.return_value = {"scanned": False}
        kwargs.setdefault("tick_s", 0.01)
        kwargs.setdefault("dispatch_every", 1)
        kwargs.setdefault("persist_state", False)
        return DigestWorker(drainer, dispatcher, **kwargs), drainer, dispatcher

    def test_drain_runs_before_dispatch(self):
        order = []
        drainer, dispatcher = MagicMock(), MagicMock()
        drainer.run_once.side_effect = lambda: order.append("drain") or {"drained": 0}
        dispatcher.run_once.side_effect = lambda: order.append("dispatch") or {"scanned": False}
        worker, _, _ = self._worker(drainer, dispatcher)
        worker.run_once()
        self.assertEqual(order, ["drain", "dispatch"])

    def test_dispatch_every_n_ticks(self):
        worker, drainer, dispatcher = self._worker(dispatch_every=3)
        for _ in range(6):
            worker.run_once()
        self.assertEqual(drainer.run_once.call_count, 6)
        self.assertEqual(dispatcher.run_once.call_count, 2)

    def test_drain_failure_does_not_stop_dispatch(self):
        drainer = MagicMock()
        drainer.run_once.side_effect = RuntimeError("clock broken")
        worker, _, dispatcher = self._worker(drainer=drainer)
        with patch("core.digest.worker.log_warn"):
            summary = worker.run_once()
        self.assertFalse(summary["ok"])
        self.assertIn("clock broken", summary["reason"])
        dispatcher.run_once.assert_called_once()

    def test_state_recorded_only_when_work_done(self):
        worker, drainer, dispatcher = self._worker(persist_state=True)
        with patch("core.digest.runtime_state.update_cycle") as upd:
            worker.run_once()
            upd.assert_not_called()
            drainer.run_once.return_value = {"drained": 2, "appended": 2}
            dispatcher.run_once.return_value = {"scanned": True, "sent": 1}
            worker.run_once()
        cycles = [c.args[0] for c in upd.call_args_list]
        self.assertEqual(cycles, ["drain", "dispatch"])
        self.assertEqual(upd.call_args_list[0].kwargs["status"], "ok")
        self.assertEqual(upd.call_args_list[0].kwargs["appended"], 2)

    def test_failure_recorded_as_error(self):
        drainer = MagicMock()
        drainer.run_once.side_effect = RuntimeError("boom")
        worker, _, _ = self._worker(drainer=drainer, persist_state=True)
        with patch("core.digest.runtime_state.update_cycle") as upd, \
             patch("core.digest.worker.log_warn"):
            worker.run_once()
        upd.assert_called_once()
        self.assertEqual(upd.call_args.kwargs["status"], "error")
        self.assertEqual(upd.call_args.kwargs["reason"], "boom")

    def test_start_stop_thread(self):
        worker, drainer, _ = self._worker()
        self.assertTrue(worker.start())
        try:
            deadline = time.monotonic() + 2
            while drainer.run_once.call_count < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            self.assertTrue(worker.is_running())
        finally:
            self.assertTrue(worker.stop(timeout=2))
        self.assertFalse(worker.is_running())
        self.assertGreaterEqual(drainer.run_once.call_count, 2)

    def test_double_start_guard(self):
        worker, _, _ = self._worker(tick_s=1.0)
        self.assertTrue(worker.start())
        try:
            with patch("core.digest.worker.log_warn") as warn:
                self.assertFalse(worker.start())
            warn.assert_called_once()
        finally:
            worker.stop(timeout=2)

    def test_stop_wakes_long_sleep(self):
        worker, _, _ = self._worker(tick_s=60)
        worker.start()
        t0 = time.monotonic()
        self.assertTrue(worker.stop(timeout=5))
        self.assertLess(time.monotonic() - t0, 5)

    def test_stop_without_start(self):
        worker, _, _ = self._worker()
        self.assertTrue(worker.stop())

    def test_status_shape(self):
        worker, _, dispatcher = self._worker()
        dispatcher.last_seen_period = "2024-01-01"
        dispatcher.still_dispatching_today = False
        worker.run_once()
        st = worker.status()
        self.assertEqual(st["ticks"], 1)
        self.assertFalse(st["running"])
        self.assertEqual(st["last_seen_period"], "2024-01-01")
        self.assertFalse(st["still_dispatching_today"])
        self.assertIsNotNone(st["last_tick_at"])


# ═══════════════════════════════════════════════════════════════════════════════
# Ops-3: Service
# ═══════════════════════════════════════════════════════════════════════════════

class TestDigestService(unittest.TestCase):

    def _service(self):
        from core.digest.service import DigestService
        self.clock = FakeClock(datetime(2024, 1, 1, 10, 0))
        self.sender = LoggingSender()
        store = DigestStore(backend=MemoryBackend(), clock=self.clock, events=NullEventLogger())
        return DigestService(
            store=store,
            sender=self.sender,
            directory=StaticDirectory(default_domain="example.org"),
            clock=self.clock,
            tick_s=0.01,
            dispatch_every=1,
            max_attempts=5,
            persist_state=False,
        )

    def test_submit_then_next_day_mail(self):
        svc = self._service()
        svc.submit("alice", "hello", "world")
        svc.submit("alice", "again", "text")
        svc.run_once()
        self.assertEqual(svc.get("alice").message_count(), 2)

        self.clock.current = datetime(2024, 1, 2, 0, 0, 1)
        svc.run_once()
        self.assertEqual(len(self.sender.sent), 1)
        self.assertEqual(svc.list_all(), [])

    def test_submit_requires_recipient(self):
        with self.assertRaises(ValueError):
            self._service().submit("", "s", "b")

    def test_admin_edit_cycle(self):
        svc = self._service()
        edit = svc.create_or_edit("carol")
        edit.add_message("manual", "entry")
        svc.commit(edit)
        self.assertEqual(svc.get("carol").message_count(), 1)

        edit = svc.create_or_edit("carol")
        svc.cancel(edit)
        svc.remove(svc.create_or_edit("carol"))
        self.assertEqual(svc.list_all(), [])

    def test_stop_warns_about_undrained_items(self):
        svc = self._service()
        svc.submit("alice", "pending", "")
        with patch("core.digest.service.log_warn") as warn:
            svc.stop()
        warn.assert_called_once()
        self.assertIn("1 undrained", warn.call_args.args[0])

    def test_stop_with_empty_queue_is_quiet(self):
        svc = self._service()
        with patch("core.digest.service.log_warn") as warn:
            svc.stop()
        warn.assert_not_called()

    def test_status(self):
        svc = self._service()
        svc.submit("alice", "pending", "")
        st = svc.status()
        self.assertEqual(st["queue_depth"], 1)
        self.assertEqual(st["dead_letter_count"], 0)
        self.assertEqual(st["locked_ids"], [])
        self.assertIn("worker", st)

    def test_get_service_singleton(self):
        from core.digest.service import get_service, reset_service
        reset_service()
        a = get_service()
        self.assertIs(a, get_service())
        reset_service()
        self.assertIsNot(a, get_service())


# ═══════════════════════════════════════════════════════════════════════════════
# Ops-4: Config
# ═══════════════════════════════════════════════════════════════════════════════

class TestConfigDefaults(unittest.TestCase):

    _KEYS = (
        "DIGEST_ENABLE", "DIGEST_RUN_MODE", "DIGEST_TZ", "DIGEST_TICK_S",
        "DIGEST_DISPATCH_EVERY_TICKS", "DIGEST_STORE_BACKEND", "DIGEST_MAX_ATTEMPTS",
        "DIGEST_SERVICE_NAME", "DIGEST_ADMIN_API_ENABLE",
    )

    def setUp(self):
        from utils.settings import settings
        self._env = patch.dict(os.environ, {}, clear=False)
        self._env.start()
        for key in self._KEYS:
            os.environ.pop(key, None)
        self._settings = patch.object(settings, "get", return_value=None)
        self._settings_get = self._settings.start()

    def tearDown(self):
        self._settings.stop()
        self._env.stop()

    def test_safe_defaults(self):
        import config
        self.assertFalse(config.get_digest_enable())
        self.assertEqual(config.get_digest_run_mode(), "off")
        self.assertEqual(config.get_digest_tz(), "local")
        self.assertEqual(config.get_digest_tick_s(), 1.0)
        self.assertEqual(config.get_digest_dispatch_every_ticks(), 1)
        self.assertEqual(config.get_digest_store_backend(), "file")
        self.assertEqual(config.get_digest_max_attempts(), 600)
        self.assertEqual(config.get_digest_service_name(), "Digest")
        self.assertTrue(config.get_digest_admin_api_enable())

    def test_env_values(self):
        import config
        os.environ["DIGEST_RUN_MODE"] = "Inline"
        os.environ["DIGEST_TICK_S"] = "0.001"
        os.environ["DIGEST_MAX_ATTEMPTS"] = "0"
        self.assertEqual(config.get_digest_run_mode(), "inline")
        self.assertEqual(config.get_digest_tick_s(), 0.05)
        self.assertEqual(config.get_digest_max_attempts(), 0)

    def test_invalid_values_fall_back(self):
        import config
        os.environ["DIGEST_RUN_MODE"] = "always"
        os.environ["DIGEST_STORE_BACKEND"] = "redis"
        os.environ["DIGEST_DISPATCH_EVERY_TICKS"] = "not-a-number"
        self.assertEqual(config.get_digest_run_mode(), "off")
        self.assertEqual(config.get_digest_store_backend(), "file")
        self.assertEqual(config.get_digest_dispatch_every_ticks(), 1)

    def test_settings_override_env(self):
        import config
        os.environ["DIGEST_SERVICE_NAME"] = "FromEnv"
        self._settings_get.side_effect = (
            lambda k, d=None: "FromSettings" if k == "DIGEST_SERVICE_NAME" else d
        )
        self.assertEqual(config.get_digest_service_name(), "FromSettings")

    def test_lock_timeout_default_and_minimum(self):
        import config
        os.environ.pop("DIGEST_LOCK_TIMEOUT_S", None)
        self.assertEqual(config.get_digest_lock_timeout_s(), 300)
        os.environ["DIGEST_LOCK_TIMEOUT_S"] = "0"
        self.assertEqual(config.get_digest_lock_timeout_s(), 1)


class TestSettingsFile(unittest.TestCase):

    def setUp(self):
        from utils.settings import settings
        self.settings = settings
        self._dir = tempfile.mkdtemp()
        self.path = os.path.join(self._dir, "settings.json")
        self._candidates = patch(
            "utils.settings._candidate_settings_files",
            return_value=[Path(self.path)],
        )
        self._candidates.start()

    def tearDown(self):
        self._candidates.stop()
        self.settings._refresh()

    def _write(self, data, mtime):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.utime(self.path, (mtime, mtime))

    def test_edits_apply_without_restart(self):
        self._write({"DIGEST_ENABLE": "true"}, 1_000_000)
        self.assertEqual(self.settings.get("DIGEST_ENABLE"), "true")
        self._write({"DIGEST_ENABLE": "false", "DIGEST_TZ": "UTC"}, 1_000_100)
        self.assertEqual(self.settings.get("DIGEST_ENABLE"), "false")
        self.assertEqual(
            self.settings.source(),
            {"file": self.path, "keys": ["DIGEST_ENABLE", "DIGEST_TZ"]},
        )

    def test_deleted_file_drops_overrides(self):
        self._write({"DIGEST_TZ": "UTC"}, 1_000_000)
        self.assertEqual(self.settings.get("DIGEST_TZ"), "UTC")
        os.unlink(self.path)
        self.assertIsNone(self.settings.get("DIGEST_TZ"))
        self.assertEqual(self.settings.source(), {"file": None, "keys": []})

    def test_corrupt_file_ignored(self):
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{nope")
        with patch("utils.settings.log_warn") as warn:
            self.assertEqual(self.settings.get("DIGEST_TZ", "local"), "local")
        warn.assert_called()


if __name__ == "__main__":
    unittest.main()
