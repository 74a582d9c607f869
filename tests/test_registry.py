import pytest

from lora_adr.errors import (DuplicateRequestError, NoPendingRequestError, ProtocolViolationError,
                             RegistryFullError, UnknownDeviceError)
from lora_adr.registry import DeviceRegistry


def test_lifecycle_idle_pending_idle():
    reg = DeviceRegistry(4)
    rec = reg.get_or_create("ed1", "s1")
    assert rec.state == "Idle"
    reg.mark_pending("ed1", now=10.0)
    assert rec.state == "AwaitingResponse" and rec.pending_since == 10.0
    reg.complete("ed1", 5, prob=0.2, features=(0.5,))
    assert rec.state == "Idle"
    assert rec.current_action == 5 and rec.action_prob == 0.2 and rec.action_features == (0.5,)
    assert reg.resolve("ed1") == 5


def test_duplicate_pending_rejected():
    reg = DeviceRegistry(2)
    reg.get_or_create("ed1")
    reg.mark_pending("ed1")
    with pytest.raises(DuplicateRequestError):
        reg.mark_pending("ed1")


def test_resolve_requires_outstanding_action():
    reg = DeviceRegistry(2)
    reg.get_or_create("ed1")
    with pytest.raises(NoPendingRequestError):
        reg.resolve("ed1")
    with pytest.raises(NoPendingRequestError):
        reg.resolve("unknown")
    reg.mark_pending("ed1")
    reg.complete("ed1", 3)
    assert reg.resolve("ed1") == 3
    with pytest.raises(NoPendingRequestError):
        reg.resolve("ed1")


def test_capacity_and_slot_reuse():
    reg = DeviceRegistry(2)
    reg.get_or_create("a")
    reg.get_or_create("b")
    with pytest.raises(RegistryFullError):
        reg.get_or_create("c")
    assert reg.evict("a")
    assert not reg.evict("a")
    reg.get_or_create("c")
    assert len(reg) == 2
    assert [r.device_id for r in reg.devices()] == ["c", "b"]


def test_evict_session_only_touches_its_devices():
    reg = DeviceRegistry(8)
    for d in ("a", "b"):
        reg.get_or_create(d, "s1")
    reg.get_or_create("c", "s2")
    assert sorted(reg.evict_session("s1")) == ["a", "b"]
    assert "c" in reg and "a" not in reg


def test_release_clears_pending_without_action():
    reg = DeviceRegistry(2)
    rec = reg.get_or_create("a")
    reg.mark_pending("a")
    reg.release("a")
    assert rec.state == "Idle" and rec.current_action is None
    reg.mark_pending("a")


def test_evicted_device_is_a_protocol_violation():
    reg = DeviceRegistry(2)
    reg.get_or_create("a", "s1")
    reg.evict_session("s1")
    with pytest.raises(UnknownDeviceError):
        reg.mark_pending("a")
    with pytest.raises(ProtocolViolationError):
        reg.complete("a", 1)
    reg.release("a")
    assert reg.get("a") is None
