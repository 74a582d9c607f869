"""
Error kinds raised by the ADR controller.
Per-message errors are recovered by the dispatcher / session loop;
only StartupError is fatal to the process.
"""
from __future__ import annotations
from typing import Optional


class ControllerError(Exception):
    """Base class for controller errors."""


class InvalidActionError(ControllerError, ValueError):
    pass


class InvalidOutcomeError(ControllerError, ValueError):
    pass


class ProtocolViolationError(ControllerError):
    def __init__(self, device_id: str, reason: str):
        super().__init__(f"device {device_id}: {reason}")
        self.device_id = device_id
        self.reason = reason


class NoPendingRequestError(ProtocolViolationError):
    """Outcome reported for a device that has no issued action awaiting it."""

    def __init__(self, device_id: str):
        super().__init__(device_id, "no outstanding action to resolve")


class DuplicateRequestError(ProtocolViolationError):
    """Second observation for a device whose previous request is still open."""

    def __init__(self, device_id: str):
        super().__init__(device_id, "observation while awaiting response")


class UnknownDeviceError(ProtocolViolationError):
    """Device is not registered, e.g. evicted when its session closed."""

    def __init__(self, device_id: str):
        super().__init__(device_id, "not registered")


class RegistryFullError(ControllerError):
    pass


class DecisionTimeout(ControllerError, TimeoutError):
    def __init__(self, device_id: str, timeout_s: float):
        super().__init__(f"device {device_id}: no decision within {timeout_s:.3f}s")
        self.device_id = device_id
        self.timeout_s = timeout_s


class FrameError(ControllerError, ValueError):
    """Malformed frame or payload; the message is dropped, the session survives."""


class SessionClosed(ControllerError, ConnectionError):
    def __init__(self, session_id: str, reason: Optional[str] = None):
        msg = f"session {session_id} closed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.session_id = session_id


class StartupError(ControllerError):
    pass
