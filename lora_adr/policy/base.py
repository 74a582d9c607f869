"""
Policy contract shared by all learning strategies.
The dispatcher only relies on select_action / update / snapshot.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence, Tuple
import logging
import threading

import numpy as np

from ..errors import InvalidActionError

logger = logging.getLogger(__name__)

Features = Optional[Sequence[float]]


class Policy(ABC):
    name = "base"
    # "scalar": update() expects a float; "vector": expects a RewardVector
    reward_kind = "scalar"

    def __init__(self, n_actions: int, seed: Optional[int] = None) -> None:
        if n_actions <= 0:
            raise ValueError("policy needs at least one action")
        self.n_actions = int(n_actions)
        self.rng = np.random.default_rng(seed)
        self._lock = threading.Lock()
        self.updates = 0
        self.clamped = 0

    def _check_action(self, action: int) -> int:
        if isinstance(action, bool) or not isinstance(action, (int, np.integer)):
            raise InvalidActionError(f"action must be an int, got {action!r}")
        if not 0 <= int(action) < self.n_actions:
            raise InvalidActionError(f"action {action} outside [0, {self.n_actions})")
        return int(action)

    def _clamp(self, value: float, lo: float, hi: float, what: str = "reward") -> float:
        if value < lo or value > hi:
            self.clamped += 1
            clamped = min(max(value, lo), hi)
            logger.warning("[CTRL] %s %.4f outside [%.4f, %.4f], clamped to %.4f", what, value, lo, hi, clamped)
            return clamped
        return value

    @abstractmethod
    def select_action(self, features: Features = None) -> int:
        ...

    def select_with_probability(self, features: Features = None) -> Tuple[int, float]:
        """Draw an action and report the probability it was drawn with."""
        a = self.select_action(features)
        return a, float(self.probabilities(features)[a])

    @abstractmethod
    def update(self, action: int, reward: Any, features: Features = None,
               prob: Optional[float] = None) -> None:
        """prob: probability the action was drawn with, if known."""
        ...

    @abstractmethod
    def probabilities(self, features: Features = None) -> np.ndarray:
        ...

    def snapshot(self) -> Dict[str, Any]:
        return {
            "policy": self.name,
            "n_actions": self.n_actions,
            "updates": self.updates,
            "clamped": self.clamped,
            "probabilities": self.probabilities().tolist(),
        }
