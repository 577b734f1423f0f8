"""
Append-only security audit log.

Each event is one JSON object per line with a severity tag so denials can be
reviewed later. Writing the log never aborts the operation being audited.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

# Truncate long values to prevent log flooding
MAX_DETAIL_LENGTH = 200


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SecurityLogger:
    """Writes security events to a JSON-lines file and the application log."""

    def __init__(self, log_path: Path | str | None, enabled: bool = True) -> None:
        self.log_path = Path(log_path) if log_path else None
        self.enabled = enabled

    def log(self, event: str, details: dict, severity: Severity = Severity.MEDIUM) -> dict:
        """Record an event. Returns the entry that was (or would have been) written."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "details": {k: self._clean(v) for k, v in details.items()},
            "severity": Severity(severity).value,
            "pid": os.getpid(),
        }

        if severity == Severity.HIGH:
            logger.error(f"SECURITY ALERT: {event} {entry['details']}")
        elif severity == Severity.MEDIUM:
            logger.warning(f"Security warning: {event} {entry['details']}")
        else:
            logger.info(f"Security info: {event} {entry['details']}")

        if self.enabled and self.log_path is not None:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry) + "\n")
            except OSError as e:
                logger.error(f"Failed to write security log: {e}")

        return entry

    @staticmethod
    def _clean(value):
        # Prevent log injection through embedded newlines
        if isinstance(value, str):
            value = value.replace("\n", " ").replace("\r", " ")
            if len(value) > MAX_DETAIL_LENGTH:
                value = value[:MAX_DETAIL_LENGTH] + "..."
        return value

    def log_path_traversal(self, attempted_path: str, identifier: str) -> dict:
        return self.log(
            "path_traversal",
            {"attempted_path": attempted_path, "identifier": identifier},
            Severity.HIGH,
        )

    def log_blocked_command(self, command: str, reason: str, identifier: str) -> dict:
        return self.log(
            "blocked_command",
            {"command": command, "reason": reason, "identifier": identifier},
            Severity.HIGH,
        )

    def log_blocked_path(self, attempted_path: str, reason: str, identifier: str) -> dict:
        return self.log(
            "blocked_path",
            {"attempted_path": attempted_path, "reason": reason, "identifier": identifier},
            Severity.MEDIUM,
        )

    def log_rate_limit_exceeded(self, identifier: str, operation: str) -> dict:
        return self.log(
            "rate_limit_exceeded",
            {"identifier": identifier, "operation": operation},
            Severity.MEDIUM,
        )

    def log_suspicious_activity(self, activity: str, details: dict) -> dict:
        return self.log("suspicious_activity", {"activity": activity, **details}, Severity.MEDIUM)

    def log_success(self, operation: str, target: str, identifier: str) -> dict:
        return self.log(
            "operation_allowed",
            {"operation": operation, "target": target, "identifier": identifier},
            Severity.LOW,
        )
