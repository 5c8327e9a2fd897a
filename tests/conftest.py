"""Pytest configuration shared by the unit and end-to-end suites.

What:
  Establish project import paths and apply a canned runtime configuration to
  every test.

Why:
  Tests must import the ``identmail`` source tree rather than an installed
  wheel, and the runtime configuration is cached globally; without explicit
  resets tests could depend on execution order.

How:
  Prepend ``identmail/src`` to ``sys.path`` when present and define the
  autouse :func:`runtime_config` fixture which points
  ``IDENTMAIL_CONFIG_PATH`` at ``tests/data/config.yaml`` and clears the cache
  before and after each test. The canned file uses a one second IDLE timeout
  so watcher tests observe cancellation quickly.

Interfaces:
  :func:`runtime_config` (pytest fixture).
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "identmail" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest

from identmail.config.loader import reset_runtime_config

CONFIG_PATH = Path(__file__).resolve().parent / "data" / "config.yaml"


@pytest.fixture(autouse=True)
def runtime_config(monkeypatch: pytest.MonkeyPatch):
    """Apply the canned configuration file for every test."""

    monkeypatch.setenv("IDENTMAIL_CONFIG_PATH", str(CONFIG_PATH))
    reset_runtime_config()
    try:
        yield
    finally:
        reset_runtime_config()
