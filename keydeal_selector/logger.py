# keydeal_selector/logger.py

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional

from .config import PROJECT_ROOT


# ================================================================
# BASE DIRECTORY
# ================================================================

# Root folder for all exported logs; the service points this at
# Settings.log_root on start-up.
LOG_ROOT = PROJECT_ROOT / "logs"


def set_log_root(path: Path | str) -> None:
    global LOG_ROOT
    LOG_ROOT = Path(path)


# ================================================================
# RUN MODE (debug, test, prod)
# ================================================================

CURRENT_RUN_MODE = "prod"   # fallback

def set_run_mode(mode: str) -> None:
    """
    Set global logging mode. Options:
        debug  → every event is also echoed to stdout
        test   → --limit runs
        prod   → default
    """
    global CURRENT_RUN_MODE
    if mode not in ("debug", "test", "prod"):
        mode = "prod"
    CURRENT_RUN_MODE = mode


# ================================================================
# IN-MEMORY LOG BUFFER
# ================================================================

_LOG_BUFFER: List[Dict[str, Any]] = []

# A long-running service would otherwise grow the buffer forever
MAX_BUFFERED_EVENTS = 20000


def log(message: str, context: str = "general", extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Append a structured log entry into the global buffer.
    """
    event = {
        "timestamp": datetime.utcnow().isoformat(),
        "mode": CURRENT_RUN_MODE,
        "context": context,
        "message": message,
        "extra": extra or {},
    }
    _LOG_BUFFER.append(event)

    if len(_LOG_BUFFER) > MAX_BUFFERED_EVENTS:
        del _LOG_BUFFER[: len(_LOG_BUFFER) - MAX_BUFFERED_EVENTS]

    if CURRENT_RUN_MODE == "debug":
        print(f"[{context}] {message}")


def clear_logs() -> None:
    _LOG_BUFFER.clear()


# ================================================================
# JSONL EXPORT
# ================================================================

def export_logs_as_jsonl() -> str:
    """
    Write buffered logs into partition paths:

        logs/<mode>/date=YYYY-MM-DD/hour=HH/keydeal_selector.jsonl

    Returns the full file path as a string.
    """
    now = datetime.utcnow()

    date = f"{now.year:04d}-{now.month:02d}-{now.day:02d}"
    hour = f"{now.hour:02d}"

    partition = (
        LOG_ROOT
        / CURRENT_RUN_MODE
        / f"date={date}"
        / f"hour={hour}"
    )
    partition.mkdir(parents=True, exist_ok=True)

    out_file = partition / "keydeal_selector.jsonl"

    with out_file.open("a", encoding="utf-8") as f:
        for entry in _LOG_BUFFER:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")

    return str(out_file)


# ================================================================
# HUMAN-READABLE TEXT EXPORT
# ================================================================

def export_logs_as_text() -> str:
    """
    Convert buffered events into a plain-text block.
    """
    lines = []
    for ev in _LOG_BUFFER:
        ts = ev["timestamp"]
        ctx = ev["context"]
        msg = ev["message"]
        extra = ev.get("extra") or {}
        suffix = f" extra={extra}" if extra else ""
        lines.append(f"[{ts}] [{ev['mode']}] [{ctx}] {msg}{suffix}")
    return "\n".join(lines)


# ================================================================
# QUERY
# ================================================================

def get_logs(context: Optional[str] = None, text: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Search the in-memory buffer by context and/or substring.
    """
    out = []
    for ev in _LOG_BUFFER:
        if context and ev["context"] != context:
            continue
        if text and text.lower() not in ev["message"].lower():
            continue
        out.append(ev)
    return out
