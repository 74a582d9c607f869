"""
Append-only CSV of reward samples, for offline inspection of a run.
"""
from __future__ import annotations
from typing import Optional
import csv
import os
import threading

from .actions import ActionCatalog
from .reward import RewardSample

HEADER = ["ts", "device", "action", "sf", "tp", "delivery", "energy", "reward", "valid"]


class FeedbackLog:
    def __init__(self, path: str, catalog: ActionCatalog) -> None:
        self.path = path
        self.catalog = catalog
        self._lock = threading.Lock()
        folder = os.path.dirname(path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        exists = os.path.exists(path) and os.path.getsize(path) > 0
        self._fh = open(path, "a", newline="")
        self._writer = csv.writer(self._fh)
        if not exists:
            self._writer.writerow(HEADER)
            self._fh.flush()

    def write(self, sample: RewardSample) -> None:
        params = self.catalog.decode(sample.action)
        row = [f"{sample.ts:.6f}", sample.device_id, sample.action, params.sf, params.tp,
               _fmt(sample.outcome.delivery), _fmt(sample.outcome.energy),
               f"{sample.reward:.6f}", int(sample.valid)]
        with self._lock:
            if self._fh.closed:
                return
            self._writer.writerow(row)
            self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if not self._fh.closed:
                self._fh.close()


def _fmt(value: Optional[float]) -> str:
    return "" if value is None else str(value)
