"""
SSH credentials.

One RSA keypair per VDC under ssh-keys/. The pair is reused when present, so
redeploying a VDC keeps the same key in every guest.
"""

from __future__ import annotations

import logging
from pathlib import Path

from virtual_datacenter.core.errors import ControlPlaneError
from virtual_datacenter.core.process import Runner, run_command

logger = logging.getLogger(__name__)


class SshKeygen:
    def __init__(self, runner: Runner | None = None, bits: int = 4096) -> None:
        self._run = runner or run_command
        self._bits = bits

    def ensure_keypair(self, private_key: Path, comment: str) -> str:
        public_key = private_key.with_name(private_key.name + ".pub")
        if private_key.exists() and public_key.exists():
            return public_key.read_text(encoding="utf-8").strip()

        private_key.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            "ssh-keygen",
            "-t",
            "rsa",
            "-b",
            str(self._bits),
            "-N",
            "",
            "-C",
            comment,
            "-f",
            str(private_key),
        ]
        result = self._run(cmd)
        if result.returncode != 0:
            raise ControlPlaneError(
                (result.stderr or "").strip() or f"ssh-keygen exit status {result.returncode}",
                operation="credentials.generate",
                resource=str(private_key),
            )
        logger.info("generated ssh keypair %s", private_key)
        return public_key.read_text(encoding="utf-8").strip()
