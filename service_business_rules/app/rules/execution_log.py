"""
In-memory execution history for rule runs.
"""

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from shared.logging import get_logger

from .models import RuleExecutionLog


class ExecutionLogStore:
    """Bounded ring buffer of execution logs; the oldest entries drop first."""

    def __init__(self, capacity: int = 10000):
        self.capacity = capacity
        self.logger = get_logger("business_rules.execution_log")
        self._entries: Deque[RuleExecutionLog] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._total_recorded = 0

    def record(self, log: RuleExecutionLog) -> None:
        with self._lock:
            self._entries.append(log)
            self._total_recorded += 1

    def query(self,
              tenant_id: str,
              organization_id: str,
              rule_id: Optional[str] = None,
              entity_id: Optional[str] = None,
              entity_type: Optional[str] = None,
              execution_result: Optional[str] = None,
              executed_by: Optional[str] = None,
              executed_from=None,
              executed_to=None,
              page: int = 1,
              page_size: int = 50) -> Tuple[List[RuleExecutionLog], int]:
        """Return one page of matching logs, newest first, plus the match count."""
        with self._lock:
            entries = list(self._entries)

        matches = [
            log for log in reversed(entries)
            if log.tenant_id == tenant_id
            and log.organization_id == organization_id
            and (rule_id is None or log.rule_id == rule_id)
            and (entity_id is None or log.entity_id == entity_id)
            and (entity_type is None or log.entity_type == entity_type)
            and (execution_result is None or log.execution_result == execution_result)
            and (executed_by is None or log.executed_by == executed_by)
            and (executed_from is None or log.executed_at >= executed_from)
            and (executed_to is None or log.executed_at <= executed_to)
        ]

        start = (page - 1) * page_size
        return matches[start:start + page_size], len(matches)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self.logger.info("Execution logs cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "capacity": self.capacity,
            "stored": len(self._entries),
            "total_recorded": self._total_recorded,
        }
