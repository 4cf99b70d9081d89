from __future__ import annotations

import sys
from typing import Tuple

from matrixci.pipeline.models import Step


def py_step(name: str, code: str, **kwargs) -> Step:
    """A step running `code` with the current interpreter."""

    command: Tuple[str, ...] = (sys.executable, "-c", code)
    return Step(name=name, command=command, **kwargs)
