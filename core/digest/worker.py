"""
core/digest/worker.py — Background scheduler for the digest pipeline.

Run modes (DIGEST_RUN_MODE):
  off      → no scheduling (default)
  sidecar  → standalone blocking loop; use via scripts/digest_worker.py
  inline   → background thread started by the admin API on startup

Scheduling:
  - Fixed tick (DIGEST_TICK_S, default 1s).
  - Each tick: drain first, then dispatch every DIGEST_DISPATCH_EVERY_TICKS ticks.
  - stop() wakes the sleeping loop; a running tick finishes (or cancels its
    edits) before the thread exits.

Failures inside a tick are logged and never end the loop.

Logging markers:
  [DigestWorker] start|stop|error
"""
from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from utils.logger import log_info, log_warn


# ── Config helpers ────────────────────────────────────────────────────────────

def _tick_s() -> float:
    try:
        from config import get_digest_tick_s
        return get_digest_tick_s()
    except Exception:
        return 1.0


def _dispatch_every() -> int:
    try:
        from config import get_digest_dispatch_every_ticks
        return get_digest_dispatch_every_ticks()
    except Exception:
        return 1


# ── Worker ────────────────────────────────────────────────────────────────────

class DigestWorker:
    """
    Drives DigestDrainer and DigestDispatcher on a fixed tick.

    Usage (sidecar):
        worker = DigestWorker(drainer, dispatcher)
        worker.run_loop()   # blocking until stop()

    Usage (inline):
        worker.start()      # background thread
        ...
        worker.stop()
    """

    def __init__(
        self,
        drainer,
        dispatcher,
        tick_s: Optional[float] = None,
        dispatch_every: Optional[int] = None,
        persist_state: bool = True,
    ) -> None:
        self._owner = f"digest-worker-{uuid.uuid4().hex[:8]}"
        self._drainer = drainer
        self._dispatcher = dispatcher
        self._tick_s = tick_s if tick_s is not None else _tick_s()
        self._dispatch_every = max(1, dispatch_every if dispatch_every is not None else _dispatch_every())
        self._persist_state = persist_state
        self._stop_event = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._ticks = 0
        self._last_summary: Optional[dict] = None
        self._last_tick_at: Optional[str] = None

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def owner(self) -> str:
        return self._owner

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the background thread. Returns False if already running."""
        with self._start_lock:
            if self.is_running():
                log_warn(f"[DigestWorker] already running owner={self._owner} — skip double-start")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self.run_loop, name="digest-worker", daemon=True
            )
            self._thread.start()
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> bool:
        """Signal the loop to exit and wait for it. Returns True if the thread ended."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout)
        stopped = not thread.is_alive()
        if stopped:
            self._thread = None
            log_info(f"[DigestWorker] stop owner={self._owner} ticks={self._ticks}")
        else:
            log_warn(f"[DigestWorker] stop timeout owner={self._owner} — tick still running")
        return stopped

    def run_loop(self) -> None:
        """Blocking tick loop; returns once stop() is called."""
        log_info(
            f"[DigestWorker] start owner={self._owner} tick_s={self._tick_s} "
            f"dispatch_every={self._dispatch_every}"
        )
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._tick_s)

    def run_once(self) -> dict:
        """
        Single tick: drain, then (every N ticks) dispatch.
        Returns summary dict; never raises.
        """
        self._ticks += 1
        summary: dict = {"ok": True, "tick": self._ticks, "drain": None, "dispatch": None, "reason": None}

        summary["drain"] = self._run_step("drain", self._drainer.run_once, summary)
        if self._ticks % self._dispatch_every == 0:
            summary["dispatch"] = self._run_step("dispatch", self._dispatcher.run_once, summary)

        self._last_summary = summary
        self._last_tick_at = datetime.now(tz=timezone.utc).isoformat().replace("+00:00", "Z")
        return summary

    def status(self) -> dict:
        return {
            "owner":            self._owner,
            "running":          self.is_running(),
            "tick_s":           self._tick_s,
            "dispatch_every":   self._dispatch_every,
            "ticks":            self._ticks,
            "last_tick_at":     self._last_tick_at,
            "last_summary":     self._last_summary,
            "last_seen_period": getattr(self._dispatcher, "last_seen_period", None),
            "still_dispatching_today": getattr(self._dispatcher, "still_dispatching_today", None),
            "dispatch_resumes_at":     getattr(self._dispatcher, "resumes_at", None),
        }

    # ── Internals ─────────────────────────────────────────────────────────────

    def _run_step(self, name: str, step, summary: dict) -> Optional[dict]:
        t_start = time.monotonic()
        try:
            result = step()
        except Exception as exc:
            log_warn(f"[DigestWorker] {name} error: {exc}")
            summary["ok"] = False
            summary["reason"] = f"{name}: {exc}"
            self._record(name, status="error", duration_s=time.monotonic() - t_start, reason=str(exc))
            return None
        if self._did_work(name, result):
            self._record(name, status="ok", duration_s=time.monotonic() - t_start, **result)
        return result

    @staticmethod
    def _did_work(name: str, result) -> bool:
        if not isinstance(result, dict):
            return False
        if name == "drain":
            return bool(result.get("drained"))
        return bool(result.get("scanned"))

    def _record(self, cycle: str, status: str, duration_s: float, **fields) -> None:
        if not self._persist_state:
            return
        try:
            from core.digest import runtime_state
            fields.pop("status", None)
            runtime_state.update_cycle(cycle, status=status, duration_s=round(duration_s, 3), **fields)
        except Exception as exc:
            log_warn(f"[DigestWorker] runtime state update failed: {exc}")
