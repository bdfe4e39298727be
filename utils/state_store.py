"""
StateStore: persistence for EnvironmentState and terminal reports.

Handles:
- In-memory state per environment id (always)
- Optional JSON file mirror, rewritten atomically after every save, so a
  crashed workflow can resume from its last recorded phase
- Report history for the API and CLI
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from framework.models import EnvironmentState, WorkflowReport

logger = logging.getLogger("envops.state_store")


class StateStore:
    """Environment state keyed by environment id, optionally file-backed."""

    def __init__(self, path: Optional[Path] = None, history_limit: int = 500):
        self.path = Path(path) if path else None
        self.history_limit = history_limit
        self._states: dict[str, EnvironmentState] = {}
        self._reports: list[WorkflowReport] = []
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        for raw in data.get("environments", []):
            state = EnvironmentState.from_dict(raw)
            self._states[state.environment_id] = state
        logger.info(f"Loaded {len(self._states)} environment states from {self.path}")

    def _flush(self) -> None:
        if not self.path:
            return
        payload = {"environments": [s.to_dict() for s in self._states.values()]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".envops-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    def load(self, environment_id: str) -> Optional[EnvironmentState]:
        with self._lock:
            state = self._states.get(environment_id)
        return state

    def save(self, state: EnvironmentState) -> None:
        with self._lock:
            self._states[state.environment_id] = state
            self._flush()

    def list_states(self) -> list[EnvironmentState]:
        with self._lock:
            return sorted(self._states.values(), key=lambda s: s.environment_id)

    def record_report(self, report: WorkflowReport) -> None:
        with self._lock:
            self._reports.append(report)
            if len(self._reports) > self.history_limit:
                del self._reports[: len(self._reports) - self.history_limit]

    def get_reports(self, environment_id: Optional[str] = None) -> list[WorkflowReport]:
        with self._lock:
            if environment_id is None:
                return list(self._reports)
            return [r for r in self._reports if r.environment_id == environment_id]
