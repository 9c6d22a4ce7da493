"""Terminal tool: run one shell command through the backend."""

import logging
import re
from typing import Any, Optional

from backend import Backend
from config import app_config
from tools._common import ToolOutput, _require

logger = logging.getLogger(__name__)

# Refused outright, independent of sensitive-command confirmation
DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/[^/\s]*", re.IGNORECASE),
    re.compile(r">\s*/dev/sda", re.IGNORECASE),
    re.compile(r"mkfs", re.IGNORECASE),
    re.compile(r"dd\s+if=", re.IGNORECASE),
]


def is_dangerous_command(command: str) -> bool:
    return any(p.search(command) for p in DANGEROUS_PATTERNS)


def truncate_output(output: str, max_length: int) -> str:
    if not output:
        return ""
    if len(output) > max_length:
        return output[:max_length] + "\n... (output truncated)"
    return output


def run_command(command: str = "", backend: Optional[Backend] = None, timeout: Optional[int] = None,
                **kw: Any) -> ToolOutput:
    """Execute a shell command in the working directory."""
    err = _require(command, "command")
    if err:
        return err
    if app_config.block_destructive_commands and is_dangerous_command(command):
        logger.warning(f"Blocked destructive command: {command}")
        return ToolOutput(success=False, output="",
                          error=f"Command blocked for safety: {command!r} matches a destructive pattern")
    timeout = int(timeout or app_config.terminal_timeout)
    try:
        stdout, stderr, rc = backend.run_command(command, cwd=".", timeout=timeout)
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))

    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = truncate_output("\n".join(parts) if parts else "(no output)", app_config.terminal_max_output)
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"
    return ToolOutput(
        success=rc == 0,
        output=output,
        error=None if rc == 0 else f"Command exited with code {rc}",
        data={"exitCode": rc},
    )
