"""
Assignment Metrics

In-process counters for assignment runs, conflicts, action logs and HTTP
requests.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AssignmentMetrics:
    """Thread-safe business and request counters"""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._started_at = time.monotonic()
        self._lock = threading.Lock()
        self.assignment_runs_total = 0
        self.assignment_conflicts_total = 0
        self.action_logs_created_total = 0
        self.http_requests_total = 0
        self.requests_by_status: Dict[str, int] = {}
        self.requests_by_method_path: Dict[str, int] = {}

    def _increment(self, counter: str) -> None:
        if not self.enabled:
            return
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def increment_assignment_run(self) -> None:
        self._increment("assignment_runs_total")

    def increment_assignment_conflict(self) -> None:
        self._increment("assignment_conflicts_total")

    def increment_action_log_created(self) -> None:
        self._increment("action_logs_created_total")

    def record_http_request(self, method: str, path: str, status_code: int) -> None:
        """Count a finished request by status code and by method and path"""
        if not self.enabled:
            return
        status_key = str(status_code)
        route_key = f"{method.upper()} {path}"
        with self._lock:
            self.http_requests_total += 1
            self.requests_by_status[status_key] = self.requests_by_status.get(status_key, 0) + 1
            self.requests_by_method_path[route_key] = self.requests_by_method_path.get(route_key, 0) + 1

    def snapshot(self, db_counts: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        """
        Point-in-time view of all counters

        Args:
            db_counts: Store row counts to report under "db"
        """
        with self._lock:
            result = {
                "service": "collections-core",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime_seconds": int(time.monotonic() - self._started_at),
                "http": {
                    "requests_total": self.http_requests_total,
                    "requests_by_status": dict(self.requests_by_status),
                    "requests_by_method_path": dict(self.requests_by_method_path)
                },
                "business": {
                    "assignment_runs_total": self.assignment_runs_total,
                    "assignment_conflicts_total": self.assignment_conflicts_total,
                    "action_logs_created_total": self.action_logs_created_total
                }
            }
        if db_counts is not None:
            result["db"] = dict(db_counts)
        return result
