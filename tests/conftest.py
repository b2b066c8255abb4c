from __future__ import annotations

import sys
from pathlib import Path
from typing import List

import pytest

from qodo_acp.process_bridge import ProcessBridge

DUMMY_QODO = Path(__file__).parent / "dummy_qodo.py"


@pytest.fixture
def dummy_command() -> List[str]:
    return [sys.executable, str(DUMMY_QODO)]


@pytest.fixture
def bridge(dummy_command) -> ProcessBridge:
    """Bridge running the scripted fake CLI with a short grace period."""
    return ProcessBridge(dummy_command, args=(), grace_period=0.3)
