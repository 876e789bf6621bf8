from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))


@pytest.fixture
def make_probe(tmp_path: Path):
    """Callable: make_probe(body, name="build-script") -> path to a sh probe.

    *body* is the shell script body; the probe is made executable.
    """

    def _make(body: str, name: str = "build-script") -> Path:
        probe = tmp_path / name
        probe.write_text("#!/bin/sh\n" + body)
        probe.chmod(probe.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return probe

    return _make


@pytest.fixture
def printf_probe(make_probe):
    """Callable: printf_probe(text) -> probe that writes *text* verbatim to stdout."""

    def _make(text: str, exit_code: int = 0) -> Path:
        # printf %s avoids format interpretation of the payload
        quoted = text.replace("'", "'\\''")
        return make_probe(f"printf '%s' '{quoted}'\nexit {exit_code}\n")

    return _make


@pytest.fixture
def script_path() -> str:
    return os.path.join(str(_REPO), "tools", "buildscript_cfg.py")
