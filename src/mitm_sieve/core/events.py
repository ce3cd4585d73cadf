import logging
import threading
import time
from collections import deque
from typing import Any, Dict, List, Optional

from ..models import Decision, LogEntry, LogLevel

logger = logging.getLogger("mitm_sieve")

DEFAULT_CAPACITY = 2000

_DECISION_LEVELS = {
    Decision.ALLOWED: LogLevel.INFO,
    Decision.DENIED: LogLevel.WARNING,
    Decision.ERROR: LogLevel.ERROR,
}


class EventLog:
    """Bounded, level-filtered record of requests and lifecycle events.

    Entries are immutable once appended. When the log is full the oldest
    entry is evicted. Entries below the configured level are dropped at
    append time; GLOBAL entries are always kept.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, level: LogLevel = LogLevel.INFO):
        self._lock = threading.Lock()
        self._entries: deque = deque(maxlen=capacity)
        self._level = LogLevel.parse(level)
        self._seq = 0

    @property
    def level(self) -> LogLevel:
        return self._level

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, entry: LogEntry) -> Optional[LogEntry]:
        """Stores ``entry`` and returns it with its sequence number assigned.

        Returns None when the entry falls below the current level.
        """
        if entry.level < self._level:
            return None
        with self._lock:
            self._seq += 1
            stored = entry.model_copy(update={"seq": self._seq})
            self._entries.append(stored)
        self._emit(stored)
        return stored

    def record_request(
        self,
        method: Optional[str],
        target: str,
        decision: Decision,
        *,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        bytes_sent: int = 0,
        cause: Optional[str] = None,
        message: Optional[str] = None,
        policy_version: Optional[int] = None,
    ) -> Optional[LogEntry]:
        return self.append(
            LogEntry(
                timestamp=time.time(),
                level=_DECISION_LEVELS[decision],
                kind="request",
                method=method,
                target=target,
                decision=decision,
                status_code=status_code,
                duration_ms=duration_ms,
                bytes_sent=bytes_sent,
                cause=cause,
                message=message,
                policy_version=policy_version,
            )
        )

    def record(self, level: LogLevel, message: str, cause: Optional[str] = None) -> Optional[LogEntry]:
        return self.append(
            LogEntry(
                timestamp=time.time(),
                level=LogLevel.parse(level),
                kind="lifecycle",
                message=message,
                cause=cause,
            )
        )

    def query(
        self,
        min_level: LogLevel = LogLevel.DEBUG,
        limit: Optional[int] = None,
        after_seq: Optional[int] = None,
    ) -> List[LogEntry]:
        """Returns matching entries, most recent first."""
        min_level = LogLevel.parse(min_level)
        with self._lock:
            snapshot = list(self._entries)

        result = []
        for entry in reversed(snapshot):
            if after_seq is not None and entry.seq <= after_seq:
                break
            if entry.level < min_level:
                continue
            result.append(entry)
            if limit is not None and len(result) >= limit:
                break
        return result

    def set_level(self, level: LogLevel) -> None:
        self._level = LogLevel.parse(level)
        self.record(LogLevel.GLOBAL, f"Log level has been set to: {self._level.name}")

    def resize(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        with self._lock:
            self._entries = deque(self._entries, maxlen=capacity)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def to_rows(self) -> List[Dict[str, Any]]:
        """Request entries, oldest first, in the request-list export shape."""
        with self._lock:
            snapshot = list(self._entries)
        return [
            {
                "method": entry.method or "",
                "request": entry.target,
                "blocked": entry.decision is Decision.DENIED,
            }
            for entry in snapshot
            if entry.kind == "request"
        ]

    def _emit(self, entry: LogEntry) -> None:
        if entry.kind == "request":
            logger.log(
                int(entry.level),
                "%s %s -> %s%s",
                entry.method or "-",
                entry.target,
                entry.decision.value if entry.decision else "-",
                f" ({entry.cause})" if entry.cause else "",
            )
        else:
            logger.log(int(entry.level), "%s", entry.message)
