"""
Boot media builder.

Produces the NoCloud seed ISO with genisoimage, or mkisofs when only that is
installed. Both take the same arguments.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, Optional

from virtual_datacenter.core.errors import ControlPlaneError
from virtual_datacenter.core.process import Runner, run_command

logger = logging.getLogger(__name__)

ISO_TOOLS = ("genisoimage", "mkisofs")


class IsoMediaBuilder:
    def __init__(self, runner: Runner | None = None, tool: Optional[str] = None) -> None:
        self._run = runner or run_command
        self._tool = tool

    def _find_tool(self, iso_path: Path) -> str:
        if self._tool:
            return self._tool
        for tool in ISO_TOOLS:
            if shutil.which(tool):
                return tool
        raise ControlPlaneError(
            "neither genisoimage nor mkisofs is installed",
            operation="media.build",
            resource=str(iso_path),
        )

    def build(self, files: Dict[str, Path], iso_path: Path) -> None:
        tool = self._find_tool(iso_path)
        iso_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [tool, "-output", str(iso_path), "-volid", "cidata", "-joliet", "-rock"]
        cmd += [str(files[name]) for name in sorted(files)]
        result = self._run(cmd)
        if result.returncode != 0:
            raise ControlPlaneError(
                (result.stderr or "").strip() or f"{tool} exit status {result.returncode}",
                operation="media.build",
                resource=str(iso_path),
            )
        logger.debug("built boot media %s", iso_path)
