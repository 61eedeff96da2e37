"""
External command runner.

qemu-img, genisoimage and ssh-keygen are called as subprocesses through a
Runner callable so tests can substitute canned results. Output is requested
in the C locale so error text stays stable across hosts.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess[str]]


def run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
    logger.debug("exec: %s", " ".join(cmd))
    env = dict(os.environ, LC_ALL="C", LANG="C")
    try:
        return subprocess.run(list(cmd), capture_output=True, text=True, check=False, env=env)
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(list(cmd), 127, "", str(exc))
