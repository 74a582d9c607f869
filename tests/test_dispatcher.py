import csv
import threading

import numpy as np
import pytest

from lora_adr.dispatcher import Dispatcher
from lora_adr.policy import Exp3Policy
from lora_adr.protocol import parse_observation
from lora_adr.registry import DeviceRegistry


class GatedPolicy(Exp3Policy):
    """Exp3 whose selection blocks until the gate is opened."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.gate.set()

    def select_with_probability(self, features=None):
        self.gate.wait()
        return super().select_with_probability(features)


@pytest.fixture
def dispatcher(cfg):
    d = Dispatcher(cfg)
    yield d
    d.shutdown()


def obs(text):
    return parse_observation(text.encode("ascii"))


def drain(d):
    # runs behind every queued policy call
    return d.owner.snapshot(timeout=2.0)


def test_first_observation_gets_a_decision(dispatcher):
    dec = dispatcher.handle("s1", obs("ed1,-1"))
    assert dec is not None and not dec.fallback
    assert 0 <= dec.action < len(dispatcher.catalog)
    assert dec.params == dispatcher.catalog.decode(dec.action)
    rec = dispatcher.registry.get("ed1")
    assert rec.state == "Idle" and rec.current_action == dec.action and rec.outcome_due
    assert dec.payload() == str(dec.action).encode()


def test_outcome_updates_policy_for_previous_action(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    dec = dispatcher.handle("s1", obs(f"ed1#2,{first.action},1,0.01"))
    drain(dispatcher)
    assert dispatcher.policy.updates == 1
    lw = dispatcher.policy.log_weights
    assert lw[first.action] > 0.0
    assert np.count_nonzero(lw) == 1
    assert dec.seq == 2 and dec.payload().endswith(b"#2")
    sample = dispatcher.history[-1]
    assert sample.valid and sample.action == first.action
    assert sample.reward == pytest.approx(1.0 - 0.5 * 0.01 / dispatcher.cfg.energy_ref)


def test_duplicate_observation_is_discarded(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    dispatcher.registry.mark_pending("ed1")  # request still open
    before = dispatcher.policy.log_weights
    assert dispatcher.handle("s1", obs(f"ed1,{first.action},1,0.01")) is None
    drain(dispatcher)
    assert dispatcher.counters["duplicates"] == 1
    assert dispatcher.policy.updates == 0
    assert np.array_equal(dispatcher.policy.log_weights, before)
    # the open request still awaits its response
    assert dispatcher.registry.get("ed1").pending


def test_malformed_outcome_applies_neutral_reward(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    dec = dispatcher.handle("s1", obs(f"ed1,{first.action},,"))
    drain(dispatcher)
    assert dec is not None
    assert dispatcher.counters["invalid_outcomes"] == 1
    assert dispatcher.policy.updates == 1
    assert np.all(dispatcher.policy.log_weights == 0.0)
    assert dispatcher.history[-1].reward == 0.0 and not dispatcher.history[-1].valid


def test_outcome_without_pending_action_is_discarded(dispatcher):
    dec = dispatcher.handle("s1", obs("ed9,3,1,0.01"))
    drain(dispatcher)
    assert dec is not None
    assert dispatcher.counters["no_pending"] == 1
    assert dispatcher.policy.updates == 0


def test_invalid_previous_action_rejects_update(dispatcher):
    dispatcher.handle("s1", obs("ed1,-1"))
    dec = dispatcher.handle("s1", obs("ed1,999,1,0.01"))
    drain(dispatcher)
    assert dec is not None
    assert dispatcher.counters["invalid_actions"] == 1
    assert dispatcher.policy.updates == 0


def test_reported_action_mismatch_still_learns(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    other = (first.action + 1) % len(dispatcher.catalog)
    dispatcher.handle("s1", obs(f"ed1,{other},1,0.0"))
    drain(dispatcher)
    assert dispatcher.counters["mismatches"] == 1
    assert dispatcher.policy.log_weights[other] > 0.0


def test_timeout_applies_fallback_and_returns_to_idle(make_cfg):
    cfg = make_cfg(timeout_s=0.05)
    catalog_size = len(cfg.sf_options) * len(cfg.tp_options)
    pol = GatedPolicy(catalog_size, gamma=0.1, seed=1)
    d = Dispatcher(cfg, policy=pol)
    try:
        first = d.handle("s1", obs("ed1,-1"))
        assert not first.fallback
        pol.gate.clear()
        dec = d.handle("s1", obs(f"ed1,{first.action},1,0.01"))
        assert dec.fallback and dec.action == first.action
        fresh = d.handle("s1", obs("ed2,-1"))
        assert fresh.fallback and fresh.action == d.catalog.default_action
        for dev in ("ed1", "ed2"):
            rec = d.registry.get(dev)
            assert rec.state == "Idle" and rec.pending_since is None
        assert d.counters["timeouts"] == 2
        assert d.registry.get("ed1").fallbacks == 1
    finally:
        pol.gate.set()
        d.shutdown()
    # the reward observed before the timeout was still learned
    assert pol.updates == 1


def test_close_session_evicts_its_devices(dispatcher):
    dispatcher.handle("s1", obs("ed1,-1"))
    dispatcher.handle("s1", obs("ed2,-1"))
    dispatcher.handle("s2", obs("ed3,-1"))
    assert sorted(dispatcher.close_session("s1")) == ["ed1", "ed2"]
    assert len(dispatcher.registry) == 1


def test_summary_reports_devices_and_policy(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    dispatcher.handle("s1", obs(f"ed1,{first.action},0,0.05"))
    s = dispatcher.summary()
    assert s["counters"]["decisions"] == 2
    assert s["samples"] == 1
    assert s["policy"]["policy"] == "exp3"
    assert sum(s["policy"]["probabilities"]) == pytest.approx(1.0)
    dev = s["devices"][0]
    assert dev["device"] == "ed1" and dev["dr"] == 12 - dev["sf"]
    dispatcher.log_summary()


def test_vector_policy_receives_reward_vector(make_cfg):
    d = Dispatcher(make_cfg(policy="egreedy"))
    try:
        first = d.handle("s1", obs("ed1,-1,,,0.2"))
        d.handle("s1", obs(f"ed1,{first.action},1,0.0,0.2"))
        drain(d)
        assert d.policy.values([0.2])[first.action][0] > 0.0
    finally:
        d.shutdown()


def test_feedback_log_csv(make_cfg, tmp_path):
    path = tmp_path / "out" / "feedback.csv"
    d = Dispatcher(make_cfg(feedback_log=str(path)))
    try:
        first = d.handle("s1", obs("ed1,-1"))
        d.handle("s1", obs(f"ed1,{first.action},1,0.02"))
        d.handle("s1", obs(f"ed1,{first.action},,"))
    finally:
        d.shutdown()
    with open(path, newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0][:3] == ["ts", "device", "action"]
    assert len(rows) == 3
    assert rows[1][1] == "ed1" and rows[1][-1] == "1"
    assert rows[2][-1] == "0"


def test_huge_energy_gets_neutral_reward_under_exp3(dispatcher):
    first = dispatcher.handle("s1", obs("ed1,-1"))
    dec = dispatcher.handle("s1", obs(f"ed1,{first.action},1,1e308"))
    drain(dispatcher)
    assert dec is not None
    assert dispatcher.counters["invalid_outcomes"] == 1
    assert dispatcher.policy.updates == 1
    assert np.all(dispatcher.policy.log_weights == 0.0)


def test_huge_energy_does_not_poison_value_policy(make_cfg):
    d = Dispatcher(make_cfg(policy="egreedy", epsilon=0.0, epsilon_min=0.0))
    try:
        for _ in range(3):
            d.handle("s1", obs("ed1,0,1,1e308"))
        dec = d.handle("s1", obs("ed2,-1"))
        drain(d)
        assert dec is not None and not dec.fallback
        assert np.all(np.isfinite(d.policy.values()))
        assert d.counters["policy_errors"] == 0
    finally:
        d.shutdown()


class FailingPolicy(Exp3Policy):
    def select_with_probability(self, features=None):
        raise RuntimeError("selection blew up")


def test_policy_error_falls_back_and_session_continues(make_cfg):
    cfg = make_cfg()
    pol = FailingPolicy(len(cfg.sf_options) * len(cfg.tp_options), seed=1)
    d = Dispatcher(cfg, policy=pol)
    try:
        dec = d.handle("s1", obs("ed1,-1"))
        assert dec.fallback and dec.action == d.catalog.default_action
        again = d.handle("s1", obs(f"ed1,{dec.action},1,0.01"))
        assert again.fallback
        assert d.counters["policy_errors"] == 2
        assert d.registry.get("ed1").state == "Idle"
    finally:
        d.shutdown()


class EvictingRegistry(DeviceRegistry):
    """Loses the device to a closing session right after lookup."""

    def mark_pending(self, device_id, now=None):
        self.evict(device_id)
        return super().mark_pending(device_id, now)


class EvictOnCompleteRegistry(DeviceRegistry):
    def complete(self, device_id, action, **kwargs):
        self.evict(device_id)
        return super().complete(device_id, action, **kwargs)


@pytest.mark.parametrize("registry_cls", [EvictingRegistry, EvictOnCompleteRegistry])
def test_device_evicted_mid_request_is_discarded(cfg, registry_cls):
    d = Dispatcher(cfg, registry=registry_cls(8))
    try:
        assert d.handle("s1", obs("ed1,-1")) is None
        assert d.counters["evicted"] == 1
        assert "ed1" not in d.registry
    finally:
        d.shutdown()
