"""
Controller configuration.
Precedence (low -> high): dataclass defaults, ADR_* environment variables,
JSON file given with --config, command-line flags.
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import argparse
import json
import math
import os

from .actions import DEFAULT_SF_OPTIONS, DEFAULT_TP_OPTIONS
from .errors import StartupError
from .reward import DEFAULT_ENERGY_REF_J

ENV_PREFIX = "ADR_"


def _int_list(value: Any) -> Tuple[int, ...]:
    if isinstance(value, str):
        return tuple(int(v) for v in value.split(",") if v.strip())
    return tuple(int(v) for v in value)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _opt_str(value: Any) -> Optional[str]:
    return value or None


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _env(name: str, default: Any, cast: Callable[[Any], Any]):
    def factory():
        key = ENV_PREFIX + name.upper()
        raw = os.environ.get(key)
        if raw is None:
            return cast(default)
        try:
            return cast(raw)
        except (TypeError, ValueError) as exc:
            raise StartupError(f"bad value for {key}: {raw!r} ({exc})") from exc
    return field(default_factory=factory, metadata={"cast": cast})


@dataclass
class ControllerConfig:
    # transport
    host: str = _env("host", "127.0.0.1", str)
    port: int = _env("port", 5557, int)
    framing: str = _env("framing", "length", str)
    max_frame: int = _env("max_frame", 64 * 1024, int)
    timeout_s: float = _env("timeout_s", 0.5, float)  # per-request deadline
    # action catalog
    sf_options: Tuple[int, ...] = _env("sf_options", DEFAULT_SF_OPTIONS, _int_list)
    tp_options: Tuple[int, ...] = _env("tp_options", DEFAULT_TP_OPTIONS, _int_list)
    num_arms: Optional[int] = _env("num_arms", None, _opt_int)
    # learning
    policy: str = _env("policy", "exp3", str)
    gamma: float = _env("gamma", 0.1, float)
    reward_min: float = _env("reward_min", -1.0, float)
    reward_max: float = _env("reward_max", 1.0, float)
    epsilon: float = _env("epsilon", 0.2, float)
    epsilon_min: float = _env("epsilon_min", 0.01, float)
    epsilon_decay: float = _env("epsilon_decay", 0.999, float)
    learning_rate: float = _env("learning_rate", 0.1, float)
    state_bins: int = _env("state_bins", 4, int)
    seed: Optional[int] = _env("seed", None, _opt_int)
    # reward
    alpha: float = _env("alpha", 1.0, float)
    beta: float = _env("beta", 0.5, float)
    energy_ref: float = _env("energy_ref", DEFAULT_ENERGY_REF_J, float)
    # bookkeeping
    max_devices: int = _env("max_devices", 4096, int)
    history_size: int = _env("history_size", 1024, int)
    feedback_log: Optional[str] = _env("feedback_log", None, _opt_str)
    log_file: Optional[str] = _env("log_file", None, _opt_str)
    debug: bool = _env("debug", "0", _bool)

    @property
    def n_actions(self) -> int:
        return len(self.sf_options) * len(self.tp_options)

    def update(self, values: Dict[str, Any]) -> "ControllerConfig":
        known = {f.name: f for f in fields(self)}
        for key, value in values.items():
            if key not in known:
                raise StartupError(f"unknown config option {key!r}")
            if value is None and key not in ("num_arms", "seed", "feedback_log", "log_file"):
                continue
            cast = known[key].metadata.get("cast", lambda v: v)
            try:
                setattr(self, key, cast(value))
            except (TypeError, ValueError) as exc:
                raise StartupError(f"bad value for {key}: {value!r} ({exc})") from exc
        return self

    def validate(self) -> "ControllerConfig":
        problems: List[str] = []
        numbers = {"gamma": self.gamma, "alpha": self.alpha, "beta": self.beta, "energy_ref": self.energy_ref,
                   "timeout_s": self.timeout_s, "reward_min": self.reward_min, "reward_max": self.reward_max}
        problems.extend(f"{k} must be finite" for k, v in numbers.items() if not math.isfinite(v))
        if not 0.0 < self.gamma <= 1.0:
            problems.append(f"gamma must be in (0, 1], got {self.gamma}")
        if self.alpha < 0 or self.beta < 0:
            problems.append("alpha and beta must be non-negative")
        if self.energy_ref <= 0:
            problems.append("energy_ref must be positive")
        if self.timeout_s <= 0:
            problems.append("timeout_s must be positive")
        if self.reward_min > self.reward_max:
            problems.append("reward_min must not exceed reward_max")
        if not self.sf_options or not self.tp_options:
            problems.append("sf_options and tp_options must be non-empty")
        if len(set(self.sf_options)) != len(self.sf_options) or len(set(self.tp_options)) != len(self.tp_options):
            problems.append("sf_options and tp_options must not contain duplicates")
        if self.num_arms is not None and self.num_arms != self.n_actions:
            problems.append(f"num_arms={self.num_arms} but |SF|x|TP|={self.n_actions}")
        if self.policy not in ("exp3", "egreedy"):
            problems.append(f"unknown policy {self.policy!r}")
        if not 0.0 <= self.epsilon_min <= self.epsilon <= 1.0:
            problems.append("need 0 <= epsilon_min <= epsilon <= 1")
        if not 0.0 < self.epsilon_decay <= 1.0:
            problems.append("epsilon_decay must be in (0, 1]")
        if not 0.0 < self.learning_rate <= 1.0:
            problems.append("learning_rate must be in (0, 1]")
        if self.state_bins < 1:
            problems.append("state_bins must be >= 1")
        if self.framing not in ("length", "line"):
            problems.append(f"unknown framing {self.framing!r}")
        if not 0 <= self.port <= 65535:
            problems.append(f"port {self.port} out of range")
        if self.max_devices <= 0 or self.history_size <= 0 or self.max_frame <= 0:
            problems.append("max_devices, history_size and max_frame must be positive")
        if problems:
            raise StartupError("invalid configuration: " + "; ".join(problems))
        return self

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["sf_options"] = list(self.sf_options)
        d["tp_options"] = list(self.tp_options)
        return d


def load_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise StartupError(f"cannot read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise StartupError(f"config file {path} must hold a JSON object")
    return data


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Bandit ADR controller for LoRaWAN simulations")
    p.add_argument("--config", default=None, help="JSON file with controller options")
    p.add_argument("--host", default=None, help="listen address")
    p.add_argument("--port", type=int, default=None, help="listen port (0 = ephemeral)")
    p.add_argument("--framing", choices=["length", "line"], default=None, help="frame format")
    p.add_argument("--timeout", dest="timeout_s", type=float, default=None, help="per-request deadline (s)")
    p.add_argument("--sf", dest="sf_options", default=None, help="spreading factors, e.g. 7,8,9,10,11,12")
    p.add_argument("--tp", dest="tp_options", default=None, help="tx powers in dBm, e.g. 2,4,6,8,10,12,14")
    p.add_argument("--arms", dest="num_arms", type=int, default=None, help="expected number of arms (checked)")
    p.add_argument("--policy", choices=["exp3", "egreedy"], default=None, help="learning strategy")
    p.add_argument("--gamma", type=float, default=None, help="Exp3 exploration rate in (0, 1]")
    p.add_argument("--alpha", type=float, default=None, help="delivery weight in the reward")
    p.add_argument("--beta", type=float, default=None, help="energy weight in the reward")
    p.add_argument("--energy-ref", dest="energy_ref", type=float, default=None, help="energy normalizer (J)")
    p.add_argument("--epsilon", type=float, default=None, help="initial epsilon (egreedy)")
    p.add_argument("--lr", dest="learning_rate", type=float, default=None, help="value step size (egreedy)")
    p.add_argument("--seed", type=int, default=None, help="RNG seed")
    p.add_argument("--max-devices", dest="max_devices", type=int, default=None, help="registry capacity")
    p.add_argument("--feedback-log", dest="feedback_log", default=None, help="append reward samples to this CSV")
    p.add_argument("--log-file", dest="log_file", default=None, help="also write logs to this file")
    p.add_argument("--debug", action="store_true", default=None, help="verbose per-message logging")
    return p


def load_config(argv: Optional[Sequence[str]] = None) -> ControllerConfig:
    args = build_arg_parser().parse_args(argv)
    cfg = ControllerConfig()
    if args.config:
        cfg.update(load_json(args.config))
    overrides = {k: v for k, v in vars(args).items() if k != "config" and v is not None}
    cfg.update(overrides)
    return cfg.validate()
