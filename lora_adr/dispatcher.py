"""
Controller dispatcher: the only owner of the learning policy.

Per observation:
  registry.mark_pending       (duplicate -> discarded)
  registry.resolve            (previous action the outcome belongs to)
  reward = aggregator(outcome) (malformed -> neutral 0)
  policy.update(prev, reward)
  policy.select_action()      (bounded by timeout_s, else fallback)
  registry.complete           (device back to Idle)

All policy calls run on PolicyOwner's single worker thread, in submission
order, so the policy has exactly one writer. Session threads only wait on
futures, never on the policy lock.
"""
from __future__ import annotations
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple
import logging
import threading
import time

from .actions import ActionCatalog, TxParams
from .config import ControllerConfig
from .errors import (DecisionTimeout, DuplicateRequestError, InvalidActionError,
                     InvalidOutcomeError, NoPendingRequestError, RegistryFullError,
                     UnknownDeviceError)
from .feedback_log import FeedbackLog
from .policy import Policy, build_policy
from .protocol import DecisionRequest, format_decision
from .registry import DeviceRecord, DeviceRegistry
from .reward import Outcome, RewardAggregator, RewardSample, RewardVector

logger = logging.getLogger(__name__)

NEUTRAL_VECTOR = RewardVector(0.0, 0.0)


class PolicyOwner:
    """Single-writer front of a policy: every call is queued to one thread."""

    def __init__(self, policy: Policy) -> None:
        self.policy = policy
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="policy-owner")

    def submit_update(self, action: int, reward: Any, features=None,
                      prob: Optional[float] = None) -> Future:
        fut = self._executor.submit(self.policy.update, action, reward, features, prob)
        fut.add_done_callback(self._report_update)
        return fut

    def submit_select(self, features=None) -> Future:
        return self._executor.submit(self.policy.select_with_probability, features)

    def snapshot(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._executor.submit(self.policy.snapshot).result(timeout=timeout)

    @staticmethod
    def _report_update(fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if isinstance(exc, InvalidActionError):
            logger.warning("[CTRL] update rejected: %s", exc)
        elif exc is not None:
            logger.error("[CTRL] policy update failed", exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


@dataclass
class Decision:
    device_id: str
    action: int
    params: TxParams
    fallback: bool = False
    seq: Optional[int] = None

    def payload(self) -> bytes:
        return format_decision(self.action, self.seq)


class Dispatcher:
    def __init__(self,
                 cfg: ControllerConfig,
                 catalog: Optional[ActionCatalog] = None,
                 policy: Optional[Policy] = None,
                 aggregator: Optional[RewardAggregator] = None,
                 registry: Optional[DeviceRegistry] = None) -> None:
        self.cfg = cfg
        self.catalog = catalog or ActionCatalog(cfg.sf_options, cfg.tp_options)
        policy = policy or build_policy(cfg, len(self.catalog))
        if policy.n_actions != len(self.catalog):
            raise ValueError(f"policy has {policy.n_actions} arms, catalog has {len(self.catalog)}")
        self.owner = PolicyOwner(policy)
        self.aggregator = aggregator or RewardAggregator(cfg.alpha, cfg.beta, cfg.energy_ref)
        self.registry = registry or DeviceRegistry(cfg.max_devices)
        self.feedback_log = FeedbackLog(cfg.feedback_log, self.catalog) if cfg.feedback_log else None
        self.history: Deque[RewardSample] = deque(maxlen=cfg.history_size)
        self.counters: Counter = Counter()
        self._stats_lock = threading.Lock()

    @property
    def policy(self) -> Policy:
        return self.owner.policy

    def count(self, key: str) -> None:
        with self._stats_lock:
            self.counters[key] += 1

    # ---- per-observation path ------------------------------------------------

    def handle(self, session_id: str, req: DecisionRequest) -> Optional[Decision]:
        """Process one observation; returns the decision to send, or None if discarded."""
        self.count("observations")
        try:
            rec = self.registry.get_or_create(req.device_id, session_id)
        except RegistryFullError as exc:
            self.count("rejected")
            logger.warning("[CTRL] device %s: dropped, %s", req.device_id, exc)
            return None
        try:
            self.registry.mark_pending(req.device_id)
        except DuplicateRequestError as exc:
            self.count("duplicates")
            logger.warning("[CTRL] %s; observation discarded", exc)
            return None
        except UnknownDeviceError as exc:
            self.count("evicted")
            logger.warning("[CTRL] %s; observation discarded", exc)
            return None

        completed = False
        try:
            self._learn(rec, req)
            action, prob, fallback = self._decide(rec, req)
            self.registry.complete(req.device_id, action, prob=prob,
                                   features=req.features, fallback=fallback)
            completed = True
        except UnknownDeviceError as exc:
            # evicted by another session closing while the decision was made
            self.count("evicted")
            logger.warning("[CTRL] %s; decision dropped", exc)
            return None
        finally:
            if not completed:
                self.registry.release(req.device_id)

        self.count("decisions")
        params = self.catalog.decode(action)
        logger.debug("[RSP] dev=%s action=%d sf=%d tp=%d fallback=%s",
                     req.device_id, action, params.sf, params.tp, fallback)
        return Decision(req.device_id, action, params, fallback, req.seq)

    def _learn(self, rec: DeviceRecord, req: DecisionRequest) -> None:
        if req.prev_action is None:
            if rec.outcome_due:
                # simulator restarted the device; forget the unreported outcome
                self.registry.resolve(req.device_id)
                logger.debug("[FB] dev=%s no outcome for action %s", req.device_id, rec.current_action)
            return
        try:
            issued = self.registry.resolve(req.device_id)
        except NoPendingRequestError as exc:
            self.count("no_pending")
            logger.warning("[CTRL] %s; outcome for action %d discarded", exc, req.prev_action)
            return
        try:
            action = self.catalog.validate(req.prev_action)
        except InvalidActionError as exc:
            self.count("invalid_actions")
            logger.warning("[CTRL] device %s: %s; update rejected", req.device_id, exc)
            return
        prob = rec.action_prob
        features = rec.action_features or None
        if action != issued:
            prob = None
            self.count("mismatches")
            logger.warning("[CTRL] device %s: reported action %d but %d was issued; learning on %d",
                           req.device_id, action, issued, action)
        sample = self._reward(req.device_id, action, req.outcome)
        reward = sample.reward if self.policy.reward_kind == "scalar" else sample.vector
        self.owner.submit_update(action, reward, features, prob)
        logger.debug("[FB] dev=%s action=%d delivery=%s energy=%s reward=%.4f",
                     req.device_id, action, req.outcome.delivery, req.outcome.energy, sample.reward)

    def _reward(self, device_id: str, action: int, outcome: Outcome) -> RewardSample:
        try:
            vec = self.aggregator.vector(outcome)
            sample = RewardSample(device_id, action, outcome, self.aggregator.scalarize(vec), vec)
        except InvalidOutcomeError as exc:
            self.count("invalid_outcomes")
            logger.warning("[CTRL] device %s: invalid outcome (%s); neutral reward applied", device_id, exc)
            sample = RewardSample(device_id, action, outcome, 0.0, NEUTRAL_VECTOR, valid=False)
        with self._stats_lock:
            self.history.append(sample)
        self.registry.set_reward(device_id, sample.reward)
        if self.feedback_log is not None:
            self.feedback_log.write(sample)
        return sample

    def _decide(self, rec: DeviceRecord, req: DecisionRequest) -> Tuple[int, Optional[float], bool]:
        fut = self.owner.submit_select(req.features or None)
        remaining = self.cfg.timeout_s - (time.monotonic() - req.arrived)
        try:
            action, prob = fut.result(timeout=max(0.0, remaining))
            return self.catalog.validate(action), prob, False
        except FutureTimeout:
            fut.cancel()
            self.count("timeouts")
            logger.warning("[CTRL] %s; fallback applied", DecisionTimeout(req.device_id, self.cfg.timeout_s))
        except InvalidActionError as exc:
            self.count("invalid_actions")
            logger.error("[CTRL] device %s: policy returned %s; fallback applied", req.device_id, exc)
        except Exception:
            self.count("policy_errors")
            logger.exception("[CTRL] device %s: policy selection failed; fallback applied", req.device_id)
        return self.fallback_action(rec), None, True

    def fallback_action(self, rec: DeviceRecord) -> int:
        if rec.current_action is not None:
            return rec.current_action
        return self.catalog.default_action

    # ---- session lifecycle / diagnostics -------------------------------------

    def close_session(self, session_id: str) -> List[str]:
        gone = self.registry.evict_session(session_id)
        if gone:
            logger.info("[CTRL] session %s closed, evicted %d device(s)", session_id, len(gone))
        return gone

    def summary(self, timeout: Optional[float] = 1.0) -> Dict[str, Any]:
        with self._stats_lock:
            counters = dict(self.counters)
            rewards = [s.reward for s in self.history]
        try:
            policy = self.owner.snapshot(timeout=timeout)
        except FutureTimeout:
            policy = {"policy": self.policy.name, "error": "snapshot timed out"}
        devices = []
        for rec in self.registry.devices():
            entry: Dict[str, Any] = {"device": rec.device_id, "state": rec.state,
                                     "decisions": rec.decisions, "fallbacks": rec.fallbacks,
                                     "last_reward": rec.last_reward}
            if rec.current_action is not None:
                p = self.catalog.decode(rec.current_action)
                entry.update(action=rec.current_action, sf=p.sf, tp=p.tp,
                             dr=self.catalog.data_rate(rec.current_action))
            devices.append(entry)
        return {
            "counters": counters,
            "mean_reward": (sum(rewards) / len(rewards)) if rewards else None,
            "samples": len(rewards),
            "policy": policy,
            "devices": devices,
        }

    def log_summary(self) -> None:
        s = self.summary()
        logger.info("[CTRL] counters=%s samples=%d mean_reward=%s",
                    s["counters"], s["samples"], s["mean_reward"])
        for d in s["devices"]:
            if "action" in d:
                logger.info("[CTRL] %s DR: %d tp: %d sf: %d", d["device"], d["dr"], d["tp"], d["sf"])
        probs = s["policy"].get("probabilities")
        if probs:
            best = max(range(len(probs)), key=probs.__getitem__)
            p = self.catalog.decode(best)
            logger.info("[CTRL] policy=%s most likely arm %d (SF%d, %d dBm) p=%.4f",
                        s["policy"]["policy"], best, p.sf, p.tp, probs[best])

    def shutdown(self) -> None:
        self.owner.shutdown(wait=True)
        if self.feedback_log is not None:
            self.feedback_log.close()
