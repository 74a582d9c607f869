import os

import pytest

from lora_adr.config import ControllerConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("ADR_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_cfg():
    def _make(**overrides):
        cfg = ControllerConfig()
        cfg.update(dict(dict(port=0, seed=7, timeout_s=1.0), **overrides))
        return cfg.validate()
    return _make


@pytest.fixture
def cfg(make_cfg):
    return make_cfg()
