"""
Epsilon-greedy value policy for contextual / multi-objective ADR.

Q[state][a] holds a 2-vector (delivery, normalized energy) per action, learned
with a constant step size. Actions are ranked by alpha * delivery - beta * energy,
so the reward stays multi-objective until selection time.
Normalized energy is capped at energy_max.
State = features discretized into state_bins equal-width bins on [0, 1];
no features means one shared state.
"""
from __future__ import annotations
from typing import Any, Dict, Optional, Tuple
import math

import numpy as np

from ..reward import RewardVector
from .base import Features, Policy

State = Tuple[int, ...]


class EpsilonGreedyPolicy(Policy):
    name = "egreedy"
    reward_kind = "vector"

    def __init__(self,
                 n_actions: int,
                 alpha: float = 1.0,
                 beta: float = 0.5,
                 epsilon: float = 0.2,
                 epsilon_min: float = 0.01,
                 epsilon_decay: float = 0.999,
                 learning_rate: float = 0.1,
                 state_bins: int = 4,
                 energy_max: float = 1e3,
                 seed: Optional[int] = None) -> None:
        super().__init__(n_actions, seed=seed)
        if not 0.0 <= epsilon_min <= epsilon <= 1.0:
            raise ValueError("need 0 <= epsilon_min <= epsilon <= 1")
        if not 0.0 < learning_rate <= 1.0:
            raise ValueError("learning_rate must be in (0, 1]")
        if state_bins < 1:
            raise ValueError("state_bins must be >= 1")
        if not 0.0 < energy_max < float("inf"):
            raise ValueError("energy_max must be positive and finite")
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.epsilon = float(epsilon)
        self.epsilon_min = float(epsilon_min)
        self.epsilon_decay = float(epsilon_decay)
        self.learning_rate = float(learning_rate)
        self.state_bins = int(state_bins)
        self.energy_max = float(energy_max)
        self.q: Dict[State, np.ndarray] = {}
        self.counts: Dict[State, np.ndarray] = {}

    def state_key(self, features: Features) -> State:
        if features is None or len(features) == 0:
            return ()
        arr = np.clip(np.asarray(features, dtype=np.float64), 0.0, 1.0)
        idx = np.minimum((arr * self.state_bins).astype(int), self.state_bins - 1)
        return tuple(int(i) for i in idx)

    def _ensure_state(self, s: State) -> np.ndarray:
        if s not in self.q:
            self.q[s] = np.zeros((self.n_actions, 2), dtype=np.float64)
            self.counts[s] = np.zeros(self.n_actions, dtype=np.int64)
        return self.q[s]

    def _scores(self, q: np.ndarray) -> np.ndarray:
        return self.alpha * q[:, 0] - self.beta * q[:, 1]

    def select_action(self, features: Features = None) -> int:
        s = self.state_key(features)
        with self._lock:
            q = self._ensure_state(s)
            if self.rng.random() < self.epsilon:
                return int(self.rng.integers(self.n_actions))
            scores = self._scores(q)
            best = np.flatnonzero(scores == scores.max())
            return int(self.rng.choice(best))

    def _as_vector(self, reward: Any) -> RewardVector:
        if isinstance(reward, RewardVector):
            vec = reward
        else:
            # scalar rewards are learned on the delivery objective
            vec = RewardVector(float(reward), 0.0)
        delivery, energy = float(vec.delivery), float(vec.energy)
        if math.isnan(delivery) or math.isnan(energy):
            raise ValueError(f"reward vector has NaN: {vec}")
        delivery = self._clamp(delivery, 0.0, 1.0, what="delivery")
        # Q must stay finite or the greedy argmax turns empty
        energy = self._clamp(energy, 0.0, self.energy_max, what="energy")
        return RewardVector(delivery, energy)

    def update(self, action: int, reward: Any, features: Features = None,
               prob: Optional[float] = None) -> None:
        a = self._check_action(action)
        vec = np.asarray(self._as_vector(reward), dtype=np.float64)
        s = self.state_key(features)
        with self._lock:
            q = self._ensure_state(s)
            q[a] += self.learning_rate * (vec - q[a])
            self.counts[s][a] += 1
            self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)
            self.updates += 1

    def probabilities(self, features: Features = None) -> np.ndarray:
        s = self.state_key(features)
        with self._lock:
            scores = self._scores(self._ensure_state(s))
            eps = self.epsilon
        best = scores == scores.max()
        probs = np.full(self.n_actions, eps / self.n_actions)
        probs[best] += (1.0 - eps) / best.sum()
        return probs / probs.sum()

    def values(self, features: Features = None) -> np.ndarray:
        s = self.state_key(features)
        with self._lock:
            return self._ensure_state(s).copy()

    def snapshot(self) -> Dict[str, Any]:
        snap = super().snapshot()
        with self._lock:
            snap["epsilon"] = self.epsilon
            snap["states"] = len(self.q)
        return snap
