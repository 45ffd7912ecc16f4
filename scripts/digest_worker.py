#!/usr/bin/env python3
"""
scripts/digest_worker.py — Standalone entry-point for the digest sidecar.

Usage:
    python scripts/digest_worker.py

Required env vars:
    DIGEST_ENABLE=true
    DIGEST_RUN_MODE=sidecar

Optional:
    DIGEST_TZ=Europe/Berlin
    DIGEST_TICK_S=1
    DIGEST_STORE_PATH=/app/data/digests

The sidecar owns dispatch only. In this mode the admin API has no running
worker, so POST /api/digest/messages files each message straight into the
shared store (lock files keep both processes from editing one record at
once) and the sidecar mails it from there the next day.
Stops on SIGINT / SIGTERM.
"""
import os
import signal
import sys

# Add project root to Python path
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import config
from core.digest.service import get_service
from utils.logger import log_info, log_warn


def main() -> int:
    if not config.get_digest_enable() or config.get_digest_run_mode() != "sidecar":
        log_warn(
            "[DigestWorker] sidecar disabled — set DIGEST_ENABLE=true and DIGEST_RUN_MODE=sidecar"
        )
        return 1

    svc = get_service()

    def _shutdown(signum, _frame):
        log_info(f"[DigestWorker] signal {signum} received — stopping")
        svc.worker.stop(timeout=0)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    log_info("[DigestWorker] Sidecar entry-point starting")
    svc.run_loop()
    svc.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
