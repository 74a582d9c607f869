"""
Exponential-weights bandit (Exp3) over the action catalog.

  select:  a ~ p
  update:  r_hat = r / max(p[a], gamma/A)    p[a] as of selection time
           w[a] *= exp(gamma * r_hat / A)
           p = (1 - gamma) * w / sum(w) + gamma / A

Passing the selection-time probability to update() makes the update factor
independent of updates applied to other arms in between.
Weights are stored as log-weights, so the multiplicative update becomes an
addition on one entry. Updates on different arms touch different entries and
commute exactly; probabilities come from a max-shifted softmax and never
overflow.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
import math

import numpy as np

from .base import Features, Policy


class Exp3Policy(Policy):
    name = "exp3"
    reward_kind = "scalar"

    def __init__(self,
                 n_actions: int,
                 gamma: float = 0.1,
                 reward_min: float = -1.0,
                 reward_max: float = 1.0,
                 seed: Optional[int] = None) -> None:
        super().__init__(n_actions, seed=seed)
        if not 0.0 < gamma <= 1.0:
            raise ValueError(f"gamma must be in (0, 1], got {gamma}")
        if reward_min > reward_max:
            raise ValueError("reward_min must not exceed reward_max")
        self.gamma = float(gamma)
        self.reward_min = float(reward_min)
        self.reward_max = float(reward_max)
        self._log_w = np.zeros(self.n_actions, dtype=np.float64)
        self._probs = np.full(self.n_actions, 1.0 / self.n_actions, dtype=np.float64)

    @property
    def floor(self) -> float:
        return self.gamma / self.n_actions

    def _mix(self, log_w: np.ndarray) -> np.ndarray:
        w = np.exp(log_w - log_w.max())
        probs = (1.0 - self.gamma) * w / w.sum() + self.floor
        return probs / probs.sum()

    @property
    def weights(self) -> np.ndarray:
        with self._lock:
            return np.exp(self._log_w)

    @property
    def log_weights(self) -> np.ndarray:
        with self._lock:
            return self._log_w.copy()

    def probabilities(self, features: Features = None) -> np.ndarray:
        with self._lock:
            return self._probs.copy()

    def select_action(self, features: Features = None) -> int:
        with self._lock:
            return int(self.rng.choice(self.n_actions, p=self._probs))

    def select_with_probability(self, features: Features = None) -> Tuple[int, float]:
        with self._lock:
            a = int(self.rng.choice(self.n_actions, p=self._probs))
            return a, float(self._probs[a])

    def estimate(self, action: int, reward: float, prob: Optional[float] = None) -> float:
        """Importance-weighted reward estimate for one observation."""
        a = self._check_action(action)
        with self._lock:
            p = self._sampling_prob(a, prob)
        return float(reward) / p

    def _sampling_prob(self, a: int, prob: Optional[float]) -> float:
        if prob is None or not math.isfinite(prob):
            prob = float(self._probs[a])
        return min(max(float(prob), self.floor), 1.0)

    def update(self, action: int, reward: Any, features: Features = None,
               prob: Optional[float] = None) -> None:
        a = self._check_action(action)
        r = float(reward)
        if math.isnan(r):
            raise ValueError("reward is NaN")
        # +-inf lands on the range bounds
        r = self._clamp(r, self.reward_min, self.reward_max)
        with self._lock:
            p = self._sampling_prob(a, prob)
            r_hat = r / p
            self._log_w[a] += self.gamma * r_hat / self.n_actions
            self._probs = self._mix(self._log_w)
            self.updates += 1

    def snapshot(self) -> Dict[str, Any]:
        snap = super().snapshot()
        snap["gamma"] = self.gamma
        snap["log_weights"] = self.log_weights.tolist()
        return snap
