"""
Per-device state, kept in a fixed-capacity arena:
  slots[i]      -> DeviceRecord or None
  index[dev_id] -> i
  free          -> reusable slot indices
Device lifecycle per request:
  Idle --mark_pending--> AwaitingResponse --complete--> Idle
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import threading
import time

from .errors import DuplicateRequestError, NoPendingRequestError, RegistryFullError, UnknownDeviceError


@dataclass
class DeviceRecord:
    device_id: str
    session_id: Optional[str] = None
    current_action: Optional[int] = None
    action_prob: Optional[float] = None  # probability current_action was drawn with
    action_features: Tuple[float, ...] = ()  # state current_action was chosen in
    pending: bool = False
    pending_since: Optional[float] = None
    outcome_due: bool = False
    last_reward: Optional[float] = None
    last_seen: Optional[float] = None
    decisions: int = 0
    fallbacks: int = 0

    @property
    def state(self) -> str:
        return "AwaitingResponse" if self.pending else "Idle"


class DeviceRegistry:
    def __init__(self, capacity: int = 4096) -> None:
        if capacity <= 0:
            raise ValueError("registry capacity must be positive")
        self.capacity = int(capacity)
        self._slots: List[Optional[DeviceRecord]] = [None] * self.capacity
        self._index: Dict[str, int] = {}
        # pop() hands out low slots first
        self._free: List[int] = list(range(self.capacity - 1, -1, -1))
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._index

    def _get(self, device_id: str) -> DeviceRecord:
        slot = self._index.get(device_id)
        rec = None if slot is None else self._slots[slot]
        if rec is None:
            raise UnknownDeviceError(device_id)
        return rec

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        with self._lock:
            if device_id not in self._index:
                return None
            return self._get(device_id)

    def get_or_create(self, device_id: str, session_id: Optional[str] = None) -> DeviceRecord:
        with self._lock:
            if device_id in self._index:
                rec = self._get(device_id)
                if session_id is not None:
                    rec.session_id = session_id
                return rec
            if not self._free:
                raise RegistryFullError(f"registry full ({self.capacity} devices), cannot add {device_id}")
            slot = self._free.pop()
            rec = DeviceRecord(device_id=device_id, session_id=session_id)
            self._slots[slot] = rec
            self._index[device_id] = slot
            return rec

    def mark_pending(self, device_id: str, now: Optional[float] = None) -> DeviceRecord:
        with self._lock:
            rec = self._get(device_id)
            if rec.pending:
                raise DuplicateRequestError(device_id)
            rec.pending = True
            rec.pending_since = time.monotonic() if now is None else now
            rec.last_seen = rec.pending_since
            return rec

    def resolve(self, device_id: str) -> int:
        """Return the action whose outcome is being reported and consume it."""
        with self._lock:
            rec = self._get(device_id) if device_id in self._index else None
            if rec is None or not rec.outcome_due or rec.current_action is None:
                raise NoPendingRequestError(device_id)
            rec.outcome_due = False
            return rec.current_action

    def complete(self, device_id: str, action: int, prob: Optional[float] = None,
                 features: Tuple[float, ...] = (), fallback: bool = False) -> DeviceRecord:
        with self._lock:
            rec = self._get(device_id)
            rec.current_action = int(action)
            rec.action_prob = prob
            rec.action_features = tuple(features)
            rec.pending = False
            rec.pending_since = None
            rec.outcome_due = True
            rec.decisions += 1
            if fallback:
                rec.fallbacks += 1
            return rec

    def release(self, device_id: str) -> None:
        """Return a device to Idle without issuing a new action."""
        with self._lock:
            if device_id in self._index:
                rec = self._get(device_id)
                rec.pending = False
                rec.pending_since = None

    def set_reward(self, device_id: str, reward: float) -> None:
        with self._lock:
            if device_id in self._index:
                self._get(device_id).last_reward = reward

    def evict(self, device_id: str) -> bool:
        with self._lock:
            slot = self._index.pop(device_id, None)
            if slot is None:
                return False
            self._slots[slot] = None
            self._free.append(slot)
            return True

    def evict_session(self, session_id: str) -> List[str]:
        with self._lock:
            gone = [d for d, i in self._index.items()
                    if self._slots[i] is not None and self._slots[i].session_id == session_id]
        for d in gone:
            self.evict(d)
        return gone

    def devices(self) -> List[DeviceRecord]:
        with self._lock:
            return [self._slots[i] for i in sorted(self._index.values())]
