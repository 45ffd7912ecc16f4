"""
digest_admin/routes.py — Digest administration API.

Endpoints:
    GET    /api/digest/records
        All stored digests (periods + messages).
    GET    /api/digest/records/{digest_id}
        One digest plus its edit-lock status; 404 if absent.
    POST   /api/digest/messages
        Accept a message for a recipient's digest. 202 when queued for the
        inline drain loop, 201 when filed straight into the store (sidecar
        mode), 503 while the pipeline is disabled.
    DELETE /api/digest/records/{digest_id}
        Remove a digest; 404 if absent, 409 while another edit holds it.
    GET    /api/digest/state
        Runtime state (last drain / dispatch), worker status, queue depth,
        dead letters, locked ids, config flags.
    POST   /api/digest/dead-letters/requeue
        Move every dead-lettered message back into the queue.

No stacktraces: unexpected errors → 503 with a brief detail.
Logging marker: [DigestAPI]
"""
from fastapi import APIRouter, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

import config
from core.digest.errors import (
    DigestError,
    DigestInUseError,
    DigestNotFoundError,
    DigestPersistenceError,
)
from core.digest.service import get_service
from utils.logger import log_info, log_warn
from utils.settings import settings

router = APIRouter(tags=["digest"])


class SubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    recipient_id: str = Field(min_length=1)
    subject: str = ""
    body: str = ""


def _raise_digest_http(exc: Exception) -> None:
    if isinstance(exc, DigestNotFoundError):
        raise HTTPException(status_code=404, detail=f"digest {exc.digest_id!r} not found")
    if isinstance(exc, DigestInUseError):
        raise HTTPException(status_code=409, detail=f"digest {exc.digest_id!r} is being edited")
    if isinstance(exc, DigestPersistenceError):
        raise HTTPException(status_code=503, detail=str(exc))
    log_warn(f"[DigestAPI] unexpected error: {exc}")
    raise HTTPException(status_code=503, detail=str(exc))


def _flags() -> dict:
    try:
        return {
            "digest_enable":    config.get_digest_enable(),
            "digest_run_mode":  config.get_digest_run_mode(),
            "digest_tz":        config.get_digest_tz(),
            "store_backend":    config.get_digest_store_backend(),
            "tick_s":           config.get_digest_tick_s(),
            "dispatch_every":   config.get_digest_dispatch_every_ticks(),
            "max_attempts":     config.get_digest_max_attempts(),
            "lock_timeout_s":   config.get_digest_lock_timeout_s(),
            "settings":         settings.source(),
        }
    except Exception as exc:
        return {"error": str(exc)}


# ── Records ───────────────────────────────────────────────────────────────────

@router.get("/api/digest/records")
async def list_records():
    try:
        records = get_service().list_all()
    except Exception as exc:
        _raise_digest_http(exc)
    return {"records": [r.to_dict() for r in records], "count": len(records)}


@router.get("/api/digest/records/{digest_id}")
async def get_record(digest_id: str):
    svc = get_service()
    try:
        record = svc.get(digest_id)
        lock = svc.store.lock_status(digest_id)
    except Exception as exc:
        _raise_digest_http(exc)
    body = record.to_dict()
    body["lock"] = lock
    return body


@router.delete("/api/digest/records/{digest_id}")
async def delete_record(digest_id: str):
    svc = get_service()
    try:
        edit = svc.store.edit(digest_id, owner="admin-api")
    except Exception as exc:
        _raise_digest_http(exc)
    with edit:
        try:
            svc.remove(edit)
        except DigestError as exc:
            _raise_digest_http(exc)
    log_info(f"[DigestAPI] removed id={digest_id}")
    return {"removed": True, "id": digest_id}


# ── Ingest ────────────────────────────────────────────────────────────────────

@router.post("/api/digest/messages", status_code=202)
def submit_message(req: SubmitRequest, response: Response):
    """
    202 {"queued": true, ...}   queued for this process's drain loop (inline worker)
    201 {"queued": false, ...}  filed into the store directly (sidecar mode)
    503                         pipeline off; nothing would ever file or send it
    409                         record stayed locked through every retry
    """
    if not config.get_digest_enable() or config.get_digest_run_mode() == "off":
        raise HTTPException(
            status_code=503,
            detail="digest pipeline disabled (DIGEST_ENABLE / DIGEST_RUN_MODE)",
        )
    try:
        result = get_service().ingest(req.recipient_id, req.subject, req.body)
    except Exception as exc:
        _raise_digest_http(exc)
    if not result["queued"]:
        response.status_code = 201
    return result


# ── State ─────────────────────────────────────────────────────────────────────

@router.get("/api/digest/state")
async def get_digest_state():
    """
    {
      "runtime":  { schema_version, drain: {...}, dispatch: {...} },
      "service":  { queue_depth, dead_letter_count, locked_ids, locks: {id: {...}}, worker: {...} },
      "flags":    { digest_enable, digest_run_mode, ... }
    }
    """
    try:
        from core.digest import runtime_state
        runtime = runtime_state.get_state()
    except Exception as exc:
        runtime = {"error": str(exc), "schema_version": 0}

    try:
        service = get_service().status()
    except Exception as exc:
        service = {"error": str(exc)}

    return JSONResponse({"runtime": runtime, "service": service, "flags": _flags()})


@router.post("/api/digest/dead-letters/requeue")
async def requeue_dead_letters():
    count = get_service().requeue_dead_letters()
    log_info(f"[DigestAPI] requeued dead letters count={count}")
    return {"requeued": count}
