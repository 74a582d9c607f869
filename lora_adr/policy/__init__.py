"""
Pluggable learning strategies. Build one by name with build_policy().
"""
from __future__ import annotations
from typing import Dict, Type

from .base import Policy
from .exp3 import Exp3Policy
from .qvalue import EpsilonGreedyPolicy

POLICIES: Dict[str, Type[Policy]] = {
    Exp3Policy.name: Exp3Policy,
    EpsilonGreedyPolicy.name: EpsilonGreedyPolicy,
}


def build_policy(cfg, n_actions: int) -> Policy:
    """Instantiate the strategy named by cfg.policy for n_actions arms."""
    if cfg.policy == Exp3Policy.name:
        return Exp3Policy(n_actions, gamma=cfg.gamma,
                          reward_min=cfg.reward_min, reward_max=cfg.reward_max,
                          seed=cfg.seed)
    if cfg.policy == EpsilonGreedyPolicy.name:
        return EpsilonGreedyPolicy(n_actions, alpha=cfg.alpha, beta=cfg.beta,
                                   epsilon=cfg.epsilon, epsilon_min=cfg.epsilon_min,
                                   epsilon_decay=cfg.epsilon_decay,
                                   learning_rate=cfg.learning_rate,
                                   state_bins=cfg.state_bins, seed=cfg.seed)
    raise ValueError(f"unknown policy {cfg.policy!r}; choose from {sorted(POLICIES)}")


__all__ = ["Policy", "Exp3Policy", "EpsilonGreedyPolicy", "POLICIES", "build_policy"]
