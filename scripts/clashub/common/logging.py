from __future__ import annotations

import threading
from datetime import datetime

LOG_LEVELS = ("DEBUG", "INFO", "SUCCESS", "WARN", "ERROR")
MAX_LOG_HISTORY = 500

log_lock = threading.Lock()
log_history: list[dict] = []


def emit_log(msg: str, level: str = "INFO") -> None:
    level = str(level or "INFO").upper()
    if level not in LOG_LEVELS:
        level = "INFO"
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    entry = {"time": now, "level": level, "msg": msg}
    with log_lock:
        log_history.append(entry)
        if len(log_history) > MAX_LOG_HISTORY:
            log_history.pop(0)
    print(f"[{now}] [{level}] {msg}", flush=True)


def get_recent_logs(limit: int = 200, level: str = "") -> list[dict]:
    wanted = str(level or "").upper()
    with log_lock:
        items = list(log_history)
    if wanted:
        items = [item for item in items if item["level"] == wanted]
    return items[-limit:]


def clear_logs() -> None:
    with log_lock:
        log_history.clear()
