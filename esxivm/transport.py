"""Remote command transport used by the probe: ssh/scp through sshpass."""

from __future__ import annotations

import subprocess
import time
from typing import Optional, Protocol

from loguru import logger

from .model import HypervisorRecord
from .runtime import resolve_password, scp_cmd, ssh_cmd
from .util import run_cmd

log = logger

AUTH_FAILURE = 'auth-failure'
NETWORK_FAILURE = 'network-failure'
REMOTE_ERROR = 'remote-error'
TIMEOUT = 'timeout'

TRANSIENT_KINDS = (NETWORK_FAILURE, TIMEOUT)

# Exit codes documented by sshpass(1); 255 comes from ssh itself.
SSHPASS_CODES = {
    1: (REMOTE_ERROR, 'Invalid command line argument for sshpass'),
    2: (REMOTE_ERROR, 'Conflicting arguments given to sshpass'),
    3: (REMOTE_ERROR, 'General runtime error of sshpass'),
    4: (NETWORK_FAILURE, 'Unrecognized response from ssh (parse error)'),
    5: (AUTH_FAILURE, 'Invalid/incorrect ssh password'),
    6: (AUTH_FAILURE, 'Host public key is unknown'),
    255: (NETWORK_FAILURE, 'Unable to establish SSH connection'),
}


class TransportError(RuntimeError):
    def __init__(
        self,
        kind: str,
        message: str,
        *,
        code: int | None = None,
        stdout: str = '',
        stderr: str = '',
    ):
        self.kind = kind
        self.code = code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f'[{kind}] {message}')


class Transport(Protocol):
    def exec(
        self,
        host: HypervisorRecord,
        command: str,
        *,
        timeout: float,
        input_text: Optional[str] = None,
    ) -> str: ...

    def copy(
        self,
        host: HypervisorRecord,
        local_path: str,
        remote_path: str,
        *,
        timeout: float,
    ) -> None: ...


def classify_exit(code: int, *, is_scp: bool = False) -> tuple[str, str]:
    if is_scp and code == 1:
        return REMOTE_ERROR, 'Failed to copy file to remote server'
    if code in SSHPASS_CODES:
        return SSHPASS_CODES[code]
    return REMOTE_ERROR, f'Remote command exited with code {code}'


class SSHTransport:
    """Executes commands on a hypervisor with ``sshpass ssh``.

    Transient failures (network errors and timeouts) are retried with a fixed
    backoff inside the calling task; everything else is raised immediately.
    """

    def __init__(self, *, retries: int = 1, backoff: float = 2.0):
        self.retries = max(0, int(retries))
        self.backoff = backoff

    def _run(
        self,
        host: HypervisorRecord,
        cmd: list[str],
        password: str,
        *,
        timeout: float,
        input_text: Optional[str],
        is_scp: bool,
    ) -> str:
        attempt = 0
        while True:
            try:
                res = run_cmd(
                    cmd,
                    check=False,
                    capture=True,
                    input_text=input_text,
                    timeout=timeout,
                    secrets=[password],
                )
            except subprocess.TimeoutExpired:
                err = TransportError(
                    TIMEOUT, f'{host.name}: no answer within {timeout:g}s'
                )
            else:
                if res.code == 0:
                    return res.stdout
                kind, desc = classify_exit(res.code, is_scp=is_scp)
                err = TransportError(
                    kind,
                    f'{host.name}: {desc}',
                    code=res.code,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )
            if err.kind not in TRANSIENT_KINDS or attempt >= self.retries:
                raise err
            attempt += 1
            log.warning(
                'Transient failure on {} ({}); retry {}/{} in {:g}s',
                host.name,
                err.kind,
                attempt,
                self.retries,
                self.backoff,
            )
            time.sleep(self.backoff)

    def exec(
        self,
        host: HypervisorRecord,
        command: str,
        *,
        timeout: float,
        input_text: Optional[str] = None,
    ) -> str:
        password = resolve_password(host)
        cmd = ssh_cmd(host, password, command)
        return self._run(
            host,
            cmd,
            password,
            timeout=timeout,
            input_text=input_text,
            is_scp=False,
        )

    def copy(
        self,
        host: HypervisorRecord,
        local_path: str,
        remote_path: str,
        *,
        timeout: float,
    ) -> None:
        password = resolve_password(host)
        cmd = scp_cmd(host, password, local_path, remote_path)
        self._run(
            host,
            cmd,
            password,
            timeout=timeout,
            input_text=None,
            is_scp=True,
        )
