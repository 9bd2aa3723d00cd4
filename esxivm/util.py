"""Shared utility helpers for subprocess execution, paths, and command formatting."""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger

log = logger

SECRET_MASK = '******'


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def mask_secrets(cmd: Sequence[str], secrets: Sequence[str] = ()) -> list[str]:
    hidden = {s for s in secrets if s}
    return [SECRET_MASK if c in hidden else c for c in cmd]


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
    secrets: Sequence[str] = (),
) -> CmdResult:
    """Run a local command, raising subprocess.TimeoutExpired on timeout."""
    shown = shell_join(mask_secrets(cmd, secrets))
    log.opt(depth=1).debug('RUN: {}', shown)
    p = subprocess.run(
        list(cmd),
        input=input_text if input_text is not None else None,
        capture_output=capture,
        text=text,
        env=env,
        timeout=timeout,
    )
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            p.returncode,
            shown,
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise CmdError(shown, res)
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shown)
    return res


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)
