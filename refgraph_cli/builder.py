"""Build capability running a shell command in the module workspace."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, TextIO

from .plugins import Builder

logger = logging.getLogger(__name__)


class CommandBuilder(Builder):
    """Runs ``command`` through the shell, streaming its output to the log sink.

    The build context, when given, is passed in ``REFGRAPH_BUILD_CONTEXT``.
    """

    def __init__(self, command: str, timeout: Optional[float] = None):
        self.command = command
        self.timeout = timeout

    def build(self, path: Path, context: Optional[str], log_sink: TextIO) -> bool:
        env = dict(os.environ)
        if context:
            env["REFGRAPH_BUILD_CONTEXT"] = context
        logger.info("Running build %r in %s", self.command, path)
        try:
            with subprocess.Popen(
                self.command,
                shell=True,
                cwd=str(path),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            ) as process:
                for line in process.stdout:
                    log_sink.write(line)
                returncode = process.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Build %r in %s timed out", self.command, path)
            return False
        except OSError as exc:
            logger.warning("Build %r in %s could not start: %s", self.command, path, exc)
            return False
        if returncode != 0:
            logger.warning("Build %r in %s exited with %d", self.command, path, returncode)
        return returncode == 0
