import json
import logging
import os
from datetime import datetime, timezone

logger = logging.getLogger("ClientLog")


class ClientLog:
    """Append-only sink for log lines posted by the browser dashboard."""

    def __init__(self, path: str):
        self.path = path

    @staticmethod
    def format_entry(entry: dict) -> str:
        timestamp = entry.get("timestamp") or datetime.now(timezone.utc).isoformat()
        log_type = entry.get("type") or "LOG"
        message = entry.get("message") or "No message"
        data = entry.get("data")
        suffix = f" {json.dumps(data, default=str)}" if data else ""
        return f"[{timestamp}] [CLIENT] {log_type}: {message}{suffix}\n"

    def write(self, entry: dict) -> bool:
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(self.format_entry(entry))
        except OSError as e:
            logger.error(f"Failed to save client log: {e}")
            return False
        return True
