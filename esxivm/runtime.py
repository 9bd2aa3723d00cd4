"""Runtime helpers for constructing ssh/scp arguments and ESXi datastore paths."""

from __future__ import annotations

import os
import posixpath

from .errors import ConfigError
from .model import HypervisorRecord
from .util import which

VMFS_ROOT = '/vmfs/volumes'
ISO_DIRNAME = '.iso'
REQUIRED_REMOTE_CMDS = ['awk', 'cat', 'mkdir', 'md5sum', 'vim-cmd']
REQUIRED_LOCAL_CMDS = ['ssh', 'scp', 'sshpass']


def missing_local_commands() -> list[str]:
    return [c for c in REQUIRED_LOCAL_CMDS if which(c) is None]


def resolve_password(host: HypervisorRecord) -> str:
    if host.ssh_password_env:
        value = os.environ.get(host.ssh_password_env)
        if value is None:
            raise ConfigError(
                f'Hypervisor {host.name!r} reads its password from '
                f'${host.ssh_password_env}, which is not set.'
            )
        return value
    return host.ssh_password


def ssh_base_args(
    *,
    connect_timeout: int = 10,
    control_path: str | None = '/tmp/ssh-%i-%C',
) -> list[str]:
    args = [
        '-o',
        'ConnectionAttempts=1',
        '-o',
        f'ConnectTimeout={connect_timeout}',
    ]
    if control_path:
        args.extend(
            [
                '-o',
                'ControlMaster=auto',
                '-o',
                f'ControlPath={control_path}',
                '-o',
                'ControlPersist=60',
            ]
        )
    args.extend(
        [
            '-o',
            'StrictHostKeyChecking=no',
            '-o',
            'UserKnownHostsFile=/dev/null',
        ]
    )
    return args


def ssh_cmd(
    host: HypervisorRecord,
    password: str,
    remote_command: str,
    *,
    connect_timeout: int = 10,
) -> list[str]:
    return [
        'sshpass',
        '-p',
        password,
        'ssh',
        *ssh_base_args(connect_timeout=connect_timeout),
        '-p',
        str(host.ssh_port),
        f'{host.ssh_username}@{host.hostname}',
        remote_command,
    ]


def scp_cmd(
    host: HypervisorRecord,
    password: str,
    local_path: str,
    remote_path: str,
    *,
    connect_timeout: int = 10,
) -> list[str]:
    return [
        'sshpass',
        '-p',
        password,
        'scp',
        *ssh_base_args(connect_timeout=connect_timeout),
        '-P',
        str(host.ssh_port),
        local_path,
        f'{host.ssh_username}@{host.hostname}:{remote_path}',
    ]


def datastore_root(datastore: str) -> str:
    return posixpath.join(VMFS_ROOT, datastore)


def vm_dir(datastore: str, vm_name: str) -> str:
    return posixpath.join(datastore_root(datastore), vm_name)


def vmx_path(datastore: str, vm_name: str) -> str:
    return posixpath.join(vm_dir(datastore, vm_name), f'{vm_name}.vmx')


def iso_dir(datastore: str) -> str:
    return posixpath.join(datastore_root(datastore), ISO_DIRNAME)


def remote_iso_path(datastore: str, local_iso: str) -> str:
    return posixpath.join(iso_dir(datastore), os.path.basename(local_iso))


def datastore_file_path(ref: str) -> str:
    """Translate ``[datastore1] dir/file.vmx`` into an absolute VMFS path."""
    ref = ref.strip()
    if ref.startswith('['):
        end = ref.find(']')
        if end > 0:
            ds = ref[1:end].strip()
            rel = ref[end + 1 :].strip()
            return posixpath.join(VMFS_ROOT, ds, rel)
    return ref


def datastore_of(path: str) -> str:
    parts = path.split('/')
    # /vmfs/volumes/<ds>/...
    if len(parts) > 3 and path.startswith(VMFS_ROOT + '/'):
        return parts[3]
    return ''
