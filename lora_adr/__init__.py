"""
Online bandit ADR controller: picks (spreading factor, tx power) per LoRaWAN
end device from delivery/energy feedback sent by a running simulation.
"""
from .actions import ActionCatalog, TxParams
from .config import ControllerConfig
from .dispatcher import Decision, Dispatcher
from .errors import (ControllerError, DecisionTimeout, DuplicateRequestError, FrameError,
                     InvalidActionError, InvalidOutcomeError, NoPendingRequestError,
                     RegistryFullError, SessionClosed, StartupError, UnknownDeviceError)
from .policy import EpsilonGreedyPolicy, Exp3Policy, build_policy
from .registry import DeviceRegistry
from .reward import Outcome, RewardAggregator, RewardVector
from .server import ControllerServer

__version__ = "0.1.0"
