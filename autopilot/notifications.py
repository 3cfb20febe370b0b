"""Fire-and-forget user notifications (the dashboard's toasts)."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

log = logging.getLogger(__name__)

MAX_RECENT = 100


@dataclass
class Toast:
    level: str  # "success" | "error"
    message: str
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class Notifier:
    def __init__(self, maxlen: int = MAX_RECENT):
        self._lock = threading.Lock()
        self._recent: deque[Toast] = deque(maxlen=maxlen)

    def _push(self, toast: Toast) -> Toast:
        with self._lock:
            self._recent.append(toast)
        return toast

    def success(self, message: str) -> Toast:
        log.info("%s", message)
        return self._push(Toast("success", message))

    def error(self, message: str) -> Toast:
        log.warning("%s", message)
        return self._push(Toast("error", message))

    def recent(self, limit: int | None = None) -> list[dict]:
        with self._lock:
            items = list(self._recent)
        if limit is not None:
            items = items[-limit:]
        return [asdict(t) for t in reversed(items)]
