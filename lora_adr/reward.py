"""
Reward aggregation for ADR feedback:
    R = alpha * delivery - beta * (energy / energy_ref)
delivery is a success flag (0/1) or a delivery ratio in [0, 1];
energy is the energy (J) spent on the previous transmission.
Pure functions of the outcome, no state.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
import math
import time

from .errors import InvalidOutcomeError

# One SF12 / 14 dBm uplink under the radio energy model of the ns-3 scenario:
# TxCurrentA = 0.028, supply 3.3 V, ~1.48 s airtime for a 23 byte payload.
DEFAULT_ENERGY_REF_J = 0.028 * 3.3 * 1.482


@dataclass(frozen=True)
class Outcome:
    delivery: Optional[float]
    energy: Optional[float]


class RewardVector(NamedTuple):
    delivery: float
    energy: float  # normalized, >= 0


@dataclass
class RewardSample:
    device_id: str
    action: int
    outcome: Outcome
    reward: float
    vector: Optional[RewardVector]
    valid: bool = True
    ts: float = field(default_factory=time.time)


def _field(value: Optional[float], name: str) -> float:
    if value is None:
        raise InvalidOutcomeError(f"missing {name}")
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise InvalidOutcomeError(f"{name} is not numeric: {value!r}") from None
    if not math.isfinite(v):
        raise InvalidOutcomeError(f"{name} is not finite: {v}")
    return v


class RewardAggregator:
    def __init__(self, alpha: float = 1.0, beta: float = 0.5,
                 energy_ref: float = DEFAULT_ENERGY_REF_J) -> None:
        if alpha < 0 or beta < 0:
            raise ValueError("reward weights must be non-negative")
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.energy_ref = float(energy_ref)

    def vector(self, outcome: Outcome) -> RewardVector:
        delivery = _field(outcome.delivery, "delivery")
        energy = _field(outcome.energy, "energy")
        if not 0.0 <= delivery <= 1.0:
            raise InvalidOutcomeError(f"delivery {delivery} outside [0, 1]")
        if energy < 0.0:
            raise InvalidOutcomeError(f"negative energy {energy}")
        if self.energy_ref <= 0.0:
            raise InvalidOutcomeError("energy reference must be positive")
        normalized = energy / self.energy_ref
        if not math.isfinite(normalized):
            raise InvalidOutcomeError(f"energy {energy} overflows once normalized by {self.energy_ref}")
        return RewardVector(delivery, normalized)

    def scalarize(self, vec: RewardVector) -> float:
        return self.alpha * vec.delivery - self.beta * vec.energy

    def combine(self, outcome: Outcome) -> float:
        return self.scalarize(self.vector(outcome))
