import os

# ═══════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ═══════════════════════════════════════════════════════════════
# ADMIN API
# ═══════════════════════════════════════════════════════════════
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")
ENABLE_CORS = os.getenv("ENABLE_CORS", "true").lower() == "true"
ADMIN_API_HOST = os.getenv("ADMIN_API_HOST", "0.0.0.0")
ADMIN_API_PORT = int(os.getenv("ADMIN_API_PORT", "8200"))


# ═══════════════════════════════════════════════════════════════
# DIGEST
# ═══════════════════════════════════════════════════════════════
# Alle Getter lesen zuerst den persistierten Override (settings.json),
# dann die Umgebungsvariable, dann den sicheren Default.

def _setting(key: str, env: str, default: str) -> str:
    try:
        from utils.settings import settings
        value = settings.get(key, None)
        if value is not None:
            return str(value)
    except Exception:
        pass
    return os.getenv(env, default)


def _flag(key: str, env: str, default: str) -> bool:
    return _setting(key, env, default).strip().lower() in ("1", "true", "yes", "on")


def _int(key: str, env: str, default: int, minimum: int = 0) -> int:
    try:
        return max(minimum, int(_setting(key, env, str(default))))
    except (TypeError, ValueError):
        return default


def _float(key: str, env: str, default: float, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(_setting(key, env, str(default))))
    except (TypeError, ValueError):
        return default


def get_digest_enable() -> bool:
    """Master switch for the digest pipeline."""
    return _flag("DIGEST_ENABLE", "DIGEST_ENABLE", "false")


def get_digest_run_mode() -> str:
    """off | inline | sidecar. Unknown values fall back to off."""
    mode = _setting("DIGEST_RUN_MODE", "DIGEST_RUN_MODE", "off").strip().lower()
    if mode not in ("off", "inline", "sidecar"):
        return "off"
    return mode


def get_digest_tz() -> str:
    """IANA zone name for day buckets, or 'local' for the host zone."""
    return _setting("DIGEST_TZ", "DIGEST_TZ", "local").strip() or "local"


def get_digest_tick_s() -> float:
    return _float("DIGEST_TICK_S", "DIGEST_TICK_S", 1.0, minimum=0.05)


def get_digest_dispatch_every_ticks() -> int:
    return _int("DIGEST_DISPATCH_EVERY_TICKS", "DIGEST_DISPATCH_EVERY_TICKS", 1, minimum=1)


def get_digest_store_backend() -> str:
    """file | memory"""
    backend = _setting("DIGEST_STORE_BACKEND", "DIGEST_STORE_BACKEND", "file").strip().lower()
    if backend not in ("file", "memory"):
        return "file"
    return backend


def get_digest_store_path() -> str:
    return _setting("DIGEST_STORE_PATH", "DIGEST_STORE_PATH", "digest_data/records")


def get_digest_state_path() -> str:
    return _setting("DIGEST_STATE_PATH", "DIGEST_STATE_PATH", "digest_data/digest_state.json")


def get_digest_lock_timeout_s() -> int:
    """Age after which a record lock file counts as abandoned and may be taken over."""
    return _int("DIGEST_LOCK_TIMEOUT_S", "DIGEST_LOCK_TIMEOUT_S", 300, minimum=1)


def get_digest_max_attempts() -> int:
    """Drain attempts per queued message before dead-lettering. 0 = unbounded."""
    return _int("DIGEST_MAX_ATTEMPTS", "DIGEST_MAX_ATTEMPTS", 600)


def get_digest_service_name() -> str:
    return _setting("DIGEST_SERVICE_NAME", "DIGEST_SERVICE_NAME", "Digest")


def get_digest_server_name() -> str:
    return _setting("DIGEST_SERVER_NAME", "DIGEST_SERVER_NAME", "localhost")


def get_digest_server_url() -> str:
    return _setting("DIGEST_SERVER_URL", "DIGEST_SERVER_URL", "http://localhost")


def get_digest_admin_api_enable() -> bool:
    return _flag("DIGEST_ADMIN_API_ENABLE", "DIGEST_ADMIN_API_ENABLE", "true")
