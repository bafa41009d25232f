"""
desksync API — importable functions over the persisted session store.

Every function returns JSON-serializable dicts/lists.
Designed to be called from scripts, the CLI, or a UI host process.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


def init() -> Dict[str, Any]:
    """Initialize desksync: create config dir, default config, and storage file."""
    from .core.config import Config, config_path

    cfg_path = config_path()
    results: Dict[str, Any] = {"created": [], "existing": []}

    config_dir = cfg_path.parent
    if config_dir.exists():
        results["existing"].append(str(config_dir))
    else:
        config_dir.mkdir(parents=True)
        results["created"].append(str(config_dir))

    if cfg_path.exists():
        results["existing"].append(str(cfg_path))
    else:
        cfg_path.write_text(_DEFAULT_CONFIG_TEMPLATE)
        results["created"].append(str(cfg_path))

    storage_path = Config.load().resolved_storage_path
    if storage_path.exists():
        results["existing"].append(str(storage_path))
    else:
        _storage().used_bytes()
        results["created"].append(str(storage_path))

    return results


def set_config(key: str, value: str) -> Dict[str, str]:
    """Write one config key to config.yaml."""
    from .core.config import Config
    Config.set_config(key, value)
    return {"key": key, "value": value}


_DEFAULT_CONFIG_TEMPLATE = """\
# desksync configuration

# ── LLM ──────────────────────────────────────────────────
# Model string uses litellm format: "provider/model-name"
# Examples:
#   anthropic/claude-3-7-sonnet-20250219  (Anthropic)
#   openai/gpt-4o                         (OpenAI)
llm_model: "anthropic/claude-3-7-sonnet-20250219"

# API key for the provider above.
# Alternatively, export the provider's env var directly:
#   ANTHROPIC_API_KEY, OPENAI_API_KEY, etc.
api_key: ""

# ── Storage ──────────────────────────────────────────────
# storage_path: "~/.desksync/db/desksync.db"
# storage_quota_bytes: 5242880
# max_sessions: 50

# ── Rate limiting ────────────────────────────────────────
# Seconds to wait when a rate-limit error carries no retry hint.
# default_retry_after: 65
"""


def _storage():
    from .core.storage import get_storage
    return get_storage()


def _persistence():
    from .core.config import Config
    from .sessions.persistence import SessionPersistence

    cfg = Config.load()
    return SessionPersistence(
        _storage(),
        key=cfg.storage_key,
        max_sessions=cfg.max_sessions,
        full_event_sessions=cfg.full_event_sessions,
    )


# ── Status ────────────────────────────────────────────────────────────────────

def status() -> Dict[str, Any]:
    """Storage stats, config diagnostics, and API key check."""
    from .core.config import Config
    from .core.errors import StorageError
    cfg = Config.load()

    result: Dict[str, Any] = {
        "llm_model": cfg.llm_model,
        "storage_key": cfg.storage_key,
    }

    key_err = cfg.check_api_key()
    result["api_key_ok"] = key_err is None
    if key_err:
        result["api_key_error"] = key_err

    try:
        result.update(_storage().stats())
        result["sessions"] = len(_persistence().load())
    except StorageError as e:
        result["storage_path"] = str(cfg.resolved_storage_path)
        result["storage_error"] = str(e)

    return result


# ── Sessions ──────────────────────────────────────────────────────────────────

def sessions(*, limit: int = 100) -> List[Dict[str, Any]]:
    """List persisted sessions, most recently updated first."""
    items = sorted(_persistence().load(), key=lambda s: s.updated_at, reverse=True)
    return [
        {
            "id": s.id,
            "name": s.name,
            "created_at": s.created_at,
            "updated_at": s.updated_at,
            "messages": len(s.messages),
            "events": len(s.event_ids),
            "sandbox_id": s.sandbox_id,
        }
        for s in items[:limit]
    ]


def show(session_id: str) -> Dict[str, Any]:
    """Full stored record for one session."""
    stored = _persistence().get(session_id)
    if stored is None:
        return {"error": f"Session not found: {session_id}"}
    return stored.to_dict()


def events(session_id: str, *, limit: Optional[int] = None) -> Dict[str, Any]:
    """Event log of one session with per-action counts."""
    from .events.store import count_events

    stored = _persistence().get(session_id)
    if stored is None:
        return {"error": f"Session not found: {session_id}"}

    items = stored.events[-limit:] if limit else stored.events
    return {
        "session_id": session_id,
        "counts": {k: v for k, v in count_events(stored.events).items() if v},
        "stripped": len(stored.event_ids) - len(stored.events),
        "events": [e.to_dict() for e in items],
    }


def delete(session_id: str) -> Dict[str, Any]:
    return {"session_id": session_id, "deleted": _persistence().delete(session_id)}


def clear() -> Dict[str, Any]:
    """Remove every persisted session."""
    persistence = _persistence()
    count = len(persistence.load())
    persistence.clear()
    return {"cleared": count}
