from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def split(cmd: str | Sequence[str]) -> list[str]:
    if isinstance(cmd, str):
        return shlex.split(cmd)
    return list(cmd)


def run_command(cmd: str | Sequence[str], timeout_s: float | None = None, env: dict[str, str] | None = None) -> CommandResult:
    """Run a command to completion and capture combined stdout/stderr.

    A missing executable or a timeout is reported as a failed result (127 / 124)
    rather than raised, so callers only have to look at the result.
    """
    argv = split(cmd)
    try:
        proc = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout_s,
            env=env,
        )
    except FileNotFoundError:
        return CommandResult(127, f"command not found: {argv[0] if argv else ''}")
    except subprocess.TimeoutExpired:
        return CommandResult(124, f"timed out after {timeout_s}s")
    return CommandResult(proc.returncode, (proc.stdout or "").strip())
