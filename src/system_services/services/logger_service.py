from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Callable

MAX_ROWS = 2000


class LoggerService:
    def __init__(self, max_rows: int = MAX_ROWS) -> None:
        self.rows: deque[dict[str, object]] = deque(maxlen=max_rows)
        self._listeners: list[Callable[[dict[str, object]], None]] = []
        self._once_keys: set[str] = set()

    def subscribe(self, listener: Callable[[dict[str, object]], None]) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        self._emit("info", event, data)

    def warn(self, event: str, **data: object) -> None:
        self._emit("warning", event, data)

    def warn_once(self, key: str, event: str, **data: object) -> bool:
        """Emit a warning the first time ``key`` is seen; later calls are dropped."""
        if key in self._once_keys:
            return False
        self._once_keys.add(key)
        self._emit("warning", event, data)
        return True

    def recent(self, event_prefix: str = "") -> list[dict[str, object]]:
        return [row for row in self.rows if str(row["event"]).startswith(event_prefix)]

    def _emit(self, level: str, event: str, data: dict[str, object]) -> None:
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "data": data,
        }
        self.rows.append(row)
        print(f"[{row['ts']}] {level.upper()} {event} {data}")
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue
