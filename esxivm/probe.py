"""Remote state probe for a single ESXi hypervisor.

``inspect`` reads the VM inventory and ISO assets without changing anything.
The remaining public methods are the mutating counterpart used by the
executor. Each one is idempotent where ESXi allows it and reports an
``ActionStatus`` instead of failing when there is nothing left to do.
"""

from __future__ import annotations

import posixpath
import re
import shlex
import time
from typing import Callable, Optional, Protocol

from loguru import logger

from .errors import (
    ESXiVMError,
    ProtocolError,
    SoftFailureError,
    ToolMissingError,
    UnreachableError,
)
from .model import (
    ActionStatus,
    ActualVM,
    AssetRecord,
    DesiredVM,
    HostInventory,
    HypervisorRecord,
    Reachability,
)
from .runtime import (
    REQUIRED_REMOTE_CMDS,
    VMFS_ROOT,
    datastore_file_path,
    datastore_of,
    vm_dir,
    vmx_path,
)
from .transport import REMOTE_ERROR, SSHTransport, Transport, TransportError
from .vmx import (
    DISK_KEY,
    attrs_from_vmx,
    build_vmx,
    disk_gb_from_descriptor,
    parse_vmx,
    render_vmx,
    set_vmx_attr,
)

log = logger

POWER_STATES = {
    'powered on': 'on',
    'powered off': 'off',
    'suspended': 'suspended',
}
POWER_OPS = ('on', 'off', 'reboot')

_GETALLVMS_RE = re.compile(r'^(\d+)\s+(\S+)\s+\[([^\]]+)\]\s+(\S+\.vmx)\b')
_AUTOSTART_KEY_RE = re.compile(r"key\s*=\s*'vim\.VirtualMachine:(\d+)'")
_AUTOSTART_ACTION_RE = re.compile(r'startAction\s*=\s*"([^"]*)"')
_MD5_RE = re.compile(r'^([0-9a-fA-F]{32})\s+(\S.*)$')

ISO_INVENTORY_CMD = (
    f'for f in {VMFS_ROOT}/*/.iso/*; do '
    '[ -f "$f" ] && md5sum "$f"; '
    'done; true'
)


def parse_getallvms(host: str, text: str) -> list[tuple[str, str, str]]:
    """Return ``(vmid, name, vmx_path)`` for every registered VM."""
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        return []
    if not lines[0].lstrip().startswith('Vmid'):
        raise ProtocolError(
            host, f'unexpected vim-cmd vmsvc/getallvms output: {lines[0]!r}'
        )
    found = []
    for line in lines[1:]:
        m = _GETALLVMS_RE.match(line.strip())
        if m is None:
            # Multi-line annotations continue on following lines.
            continue
        vmid, name, ds, rel = m.groups()
        found.append((vmid, name, datastore_file_path(f'[{ds}] {rel}')))
    return found


def parse_power_state(host: str, text: str) -> str:
    for line in reversed(text.strip().splitlines()):
        state = POWER_STATES.get(line.strip().lower())
        if state is not None:
            return state
    raise ProtocolError(host, f'unexpected power state output: {text.strip()!r}')


def parse_autostart(text: str) -> set[str]:
    """VM ids whose autostart entry powers them on."""
    enabled: set[str] = set()
    current: Optional[str] = None
    for line in text.splitlines():
        m = _AUTOSTART_KEY_RE.search(line)
        if m:
            current = m.group(1)
            continue
        m = _AUTOSTART_ACTION_RE.search(line)
        if m and current is not None:
            if m.group(1).strip().lower() == 'poweron':
                enabled.add(current)
            current = None
    return enabled


def parse_md5_inventory(text: str) -> list[AssetRecord]:
    assets = []
    for line in text.splitlines():
        m = _MD5_RE.match(line.strip())
        if m:
            assets.append(AssetRecord(path=m.group(2), checksum=m.group(1).lower()))
    return assets


class ESXiProbe:
    """Queries and mutates one hypervisor through a ``Transport``."""

    def __init__(
        self,
        host: HypervisorRecord,
        transport: Transport,
        *,
        timeout: float = 30.0,
        shutdown_wait: float = 60.0,
        poll_interval: float = 5.0,
    ):
        self.host = host
        self.transport = transport
        self.timeout = timeout
        self.shutdown_wait = shutdown_wait
        self.poll_interval = poll_interval

    def _exec(self, command: str, *, input_text: Optional[str] = None) -> str:
        try:
            out = self.transport.exec(
                self.host, command, timeout=self.timeout, input_text=input_text
            )
        except TransportError as ex:
            if ex.kind != REMOTE_ERROR:
                self.host.status = Reachability.UNREACHABLE
                raise UnreachableError(self.host.name, str(ex))
            raise
        return out

    def _try(self, command: str) -> bool:
        try:
            self._exec(command)
        except TransportError:
            return False
        return True

    def check_connection(self) -> None:
        try:
            self._exec('true')
        except TransportError as ex:
            raise ProtocolError(
                self.host.name, f'cannot run commands: {ex.stderr.strip() or ex}'
            )
        self.host.status = Reachability.REACHABLE

    def check_tools(self) -> None:
        tools = ' '.join(REQUIRED_REMOTE_CMDS)
        try:
            self._exec(f'type -f {tools} >/dev/null')
        except TransportError as ex:
            raise ToolMissingError(
                self.host.name,
                f'one of the required commands is missing: {tools} '
                f'({ex.stderr.strip() or ex})',
            )

    def _remote_text(self, command: str, what: str) -> str:
        try:
            return self._exec(command)
        except TransportError as ex:
            raise ProtocolError(
                self.host.name, f'cannot {what}: {ex.stderr.strip() or ex}'
            )

    def list_vms(self) -> list[tuple[str, str, str]]:
        out = self._remote_text(
            'vim-cmd vmsvc/getallvms', 'list virtual machines'
        )
        return parse_getallvms(self.host.name, out)

    def find(self, name: str) -> tuple[str, str] | None:
        for vmid, vm_name, path in self.list_vms():
            if vm_name == name:
                return vmid, path
        return None

    def _require(self, name: str) -> tuple[str, str]:
        found = self.find(name)
        if found is None:
            raise ESXiVMError(
                f"{self.host.name}: virtual machine '{name}' is not registered"
            )
        return found

    def power_state(self, vmid: str) -> str:
        out = self._remote_text(
            f'vim-cmd vmsvc/power.getstate {vmid}', 'read power state'
        )
        return parse_power_state(self.host.name, out)

    def _read_vmx(self, path: str) -> dict[str, str]:
        return parse_vmx(
            self._remote_text(f'cat {shlex.quote(path)}', f'read {path}')
        )

    def _disk_gb(self, vmx_file: str, params: dict[str, str]) -> str:
        disk = params.get(DISK_KEY, '')
        if not disk:
            return ''
        if not disk.startswith('/'):
            disk = posixpath.join(posixpath.dirname(vmx_file), disk)
        text = self._remote_text(f'cat {shlex.quote(disk)}', f'read {disk}')
        return disk_gb_from_descriptor(text)

    def inspect(self) -> HostInventory:
        """Discover VMs and ISO assets on the host without mutating it."""
        self.check_connection()
        self.check_tools()
        registered = self.list_vms()
        autostart = parse_autostart(
            self._remote_text(
                'vim-cmd hostsvc/autostartmanager/get_autostartseq',
                'read autostart sequence',
            )
        )
        assets = parse_md5_inventory(
            self._remote_text(ISO_INVENTORY_CMD, 'list ISO assets')
        )
        checksums = {a.path: a.checksum for a in assets}
        vms: list[ActualVM] = []
        for vmid, name, path in registered:
            params = self._read_vmx(path)
            attrs = attrs_from_vmx(params)
            attrs['autostart'] = 'true' if vmid in autostart else 'false'
            attrs['disk_gb'] = self._disk_gb(path, params)
            iso = attrs.get('iso', '')
            vms.append(
                ActualVM(
                    name=name,
                    host=self.host.name,
                    vmid=vmid,
                    vmx_path=path,
                    datastore=datastore_of(path),
                    power_state=self.power_state(vmid),
                    attrs=attrs,
                    asset_checksums=(
                        {iso: checksums[iso]} if iso in checksums else {}
                    ),
                )
            )
        log.debug(
            'Inspected {}: {} vms, {} iso assets',
            self.host.name,
            len(vms),
            len(assets),
        )
        return HostInventory(host=self.host.name, vms=vms, assets=assets)

    # Mutating counterpart

    def _run(self, command: str, what: str, *, input_text: Optional[str] = None) -> str:
        try:
            return self._exec(command, input_text=input_text)
        except TransportError as ex:
            raise ESXiVMError(
                f'{self.host.name}: failed to {what}: {ex.stderr.strip() or ex}'
            )

    def _wait_for_state(self, vmid: str, wanted: str) -> bool:
        deadline = time.monotonic() + self.shutdown_wait
        while True:
            if self.power_state(vmid) == wanted:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)

    def _power_off(self, vmid: str, *, force: bool) -> None:
        if self.power_state(vmid) == 'off':
            return
        graceful = self._try(f'vim-cmd vmsvc/power.shutdown {vmid}')
        if graceful and self._wait_for_state(vmid, 'off'):
            return
        if not force:
            raise SoftFailureError(
                f'{self.host.name}: graceful shutdown of vm {vmid} failed '
                '(guest tools not responding?); re-run with --force to power off'
            )
        log.warning('Forcing power off of vm {} on {}', vmid, self.host.name)
        self._run(f'vim-cmd vmsvc/power.off {vmid}', 'power off')

    def create(self, vm: DesiredVM, iso_path: str) -> ActionStatus:
        if self.find(vm.name) is not None:
            raise ESXiVMError(
                f"{self.host.name}: virtual machine '{vm.name}' already exists"
            )
        datastore = vm.creation_value('datastore')
        directory = vm_dir(datastore, vm.name)
        vmx_file = vmx_path(datastore, vm.name)
        qdir = shlex.quote(directory)
        if not self._try(f'! test -d {qdir}'):
            raise ESXiVMError(
                f"{self.host.name}: directory '{directory}' already exists; "
                'remove it manually and try again'
            )
        self._run(f'mkdir {qdir}', f'create directory {directory}')
        disk_file = ''
        disk_gb = vm.creation_value('disk_gb')
        if disk_gb:
            disk_file = f'{vm.name}.vmdk'
            disk_path = posixpath.join(directory, disk_file)
            self._run(
                f'vmkfstools -c {int(disk_gb)}G -d thin {shlex.quote(disk_path)}',
                f'create disk {disk_path}',
            )
        params = build_vmx(vm, iso_path, disk_file)
        self._run(
            f'cat > {shlex.quote(vmx_file)}',
            f'write {vmx_file}',
            input_text=render_vmx(params),
        )
        out = self._run(
            f'vim-cmd solo/registervm {shlex.quote(vmx_file)} {shlex.quote(vm.name)}',
            'register virtual machine',
        )
        vmid = out.strip().splitlines()[-1].strip() if out.strip() else ''
        if not vmid.isdigit():
            raise ProtocolError(self.host.name, f'registervm returned {out!r}')
        if vm.creation_value('autostart') == 'true':
            self._set_autostart(vmid, True)
        self._run(f'vim-cmd vmsvc/power.on {vmid} >/dev/null', 'power on')
        log.info('Created {} on {} (vmid={})', vm.name, self.host.name, vmid)
        return ActionStatus.APPLIED

    def destroy(self, name: str, *, force: bool = False) -> ActionStatus:
        found = self.find(name)
        if found is None:
            return ActionStatus.ALREADY_ABSENT
        vmid, _ = found
        self._power_off(vmid, force=force)
        self._run(f'vim-cmd vmsvc/destroy {vmid}', f'destroy {name}')
        log.info('Destroyed {} on {}', name, self.host.name)
        return ActionStatus.APPLIED

    def power(self, name: str, op: str, *, force: bool = False) -> ActionStatus:
        if op not in POWER_OPS:
            raise ValueError(f'power operation must be one of {POWER_OPS}')
        vmid, _ = self._require(name)
        if op == 'on':
            if self.power_state(vmid) != 'on':
                self._run(f'vim-cmd vmsvc/power.on {vmid} >/dev/null', 'power on')
        elif op == 'off':
            self._power_off(vmid, force=force)
        else:
            if not self._try(f'vim-cmd vmsvc/power.reboot {vmid}'):
                if not force:
                    raise SoftFailureError(
                        f'{self.host.name}: guest reboot of {name} failed '
                        '(guest tools not responding?); re-run with --force to reset'
                    )
                log.warning('Forcing reset of {} on {}', name, self.host.name)
                self._run(f'vim-cmd vmsvc/power.reset {vmid}', 'reset')
        return ActionStatus.APPLIED

    def _set_autostart(self, vmid: str, enabled: bool) -> None:
        if enabled:
            self._run(
                'vim-cmd hostsvc/autostartmanager/enable_autostart true',
                'enable autostart manager',
            )
        action = 'powerOn' if enabled else 'none'
        self._run(
            f'vim-cmd hostsvc/autostartmanager/update_autostartentry {vmid} '
            f'{action} 120 1 systemDefault 120 systemDefault',
            'update autostart entry',
        )

    def set_attribute(
        self, name: str, attr: str, value: str, *, force: bool = False
    ) -> ActionStatus:
        vmid, path = self._require(name)
        if attr == 'autostart':
            self._set_autostart(vmid, value == 'true')
            return ActionStatus.APPLIED
        params = self._read_vmx(path)
        if attr == 'disk_gb':
            disk = params.get(DISK_KEY, '')
            if not disk:
                raise ESXiVMError(f'{self.host.name}: {name} has no disk to resize')
            if not disk.startswith('/'):
                disk = posixpath.join(posixpath.dirname(path), disk)
            current = self._disk_gb(path, params)
            if current and int(value) < int(current):
                raise ESXiVMError(
                    f'{self.host.name}: refusing to shrink disk of {name} '
                    f'from {current}G to {value}G'
                )
            self._run(
                f'vmkfstools -X {int(value)}G {shlex.quote(disk)}',
                f'grow disk of {name}',
            )
            return ActionStatus.APPLIED
        set_vmx_attr(params, attr, value)
        self._run(
            f'cat > {shlex.quote(path)}',
            f'write {path}',
            input_text=render_vmx(params),
        )
        self._run(f'vim-cmd vmsvc/reload {vmid}', f'reload {name}')
        return ActionStatus.APPLIED

    def upload_asset(self, local_path: str, remote_path: str) -> ActionStatus:
        directory = posixpath.dirname(remote_path)
        self._run(f'mkdir -p {shlex.quote(directory)}', f'create {directory}')
        try:
            self.transport.copy(
                self.host, local_path, remote_path, timeout=self.timeout
            )
        except TransportError as ex:
            if ex.kind != REMOTE_ERROR:
                self.host.status = Reachability.UNREACHABLE
                raise UnreachableError(self.host.name, str(ex))
            raise ESXiVMError(f'{self.host.name}: failed to upload {local_path}: {ex}')
        log.info('Uploaded {} to {}:{}', local_path, self.host.name, remote_path)
        return ActionStatus.APPLIED

    def remove_asset(self, remote_path: str) -> ActionStatus:
        qpath = shlex.quote(remote_path)
        if not self._try(f'test -f {qpath}'):
            return ActionStatus.ALREADY_ABSENT
        self._run(f'rm -f {qpath}', f'remove {remote_path}')
        log.info('Removed unused asset {}:{}', self.host.name, remote_path)
        return ActionStatus.APPLIED


class Probe(Protocol):
    host: HypervisorRecord

    def inspect(self) -> HostInventory: ...

    def create(self, vm: DesiredVM, iso_path: str) -> ActionStatus: ...

    def destroy(self, name: str, *, force: bool = False) -> ActionStatus: ...

    def set_attribute(
        self, name: str, attr: str, value: str, *, force: bool = False
    ) -> ActionStatus: ...

    def power(self, name: str, op: str, *, force: bool = False) -> ActionStatus: ...

    def upload_asset(self, local_path: str, remote_path: str) -> ActionStatus: ...

    def remove_asset(self, remote_path: str) -> ActionStatus: ...


ProbeFactory = Callable[[HypervisorRecord], Probe]


def ssh_probe_factory(
    *, timeout: float = 30.0, retries: int = 1, backoff: float = 2.0
) -> ProbeFactory:
    transport = SSHTransport(retries=retries, backoff=backoff)

    def factory(host: HypervisorRecord) -> Probe:
        return ESXiProbe(host, transport, timeout=timeout)

    return factory
