"""Persistence sinks for finished analyses."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import List, Optional

from stockpilot.config import Paths
from stockpilot.models import AnalysisReport
from stockpilot.utils.logger import setup_logger

logger = setup_logger("sink")


class JsonlAnalysisSink:
    """Append one JSON line per analysis to a file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or Paths.ANALYSES)
        self._lock = threading.Lock()

    def write(self, report: AnalysisReport) -> None:
        line = json.dumps(report.to_dict(), sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug("Saved analysis for %s to %s", report.symbol, self.path)

    def read_all(self) -> List[dict]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


class MemorySink:
    """Keep analyses in memory."""

    def __init__(self):
        self.reports: List[AnalysisReport] = []
        self._lock = threading.Lock()

    def write(self, report: AnalysisReport) -> None:
        with self._lock:
            self.reports.append(report)
