"""In-memory stand-ins for ESXi hypervisors used across the test suite."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable, Optional

import pytest

from esxivm.errors import ESXiVMError, UnreachableError
from esxivm.model import (
    DIFF_ATTRS,
    ActionStatus,
    ActualVM,
    Attr,
    AssetRecord,
    DesiredVM,
    HostInventory,
    HypervisorRecord,
    Reachability,
)
from esxivm.runtime import vmx_path


class FakeHypervisor:
    """Keeps VMs and ISO assets in dictionaries and records every call."""

    def __init__(self, name: str, checksum_of: Callable[[str], str] = lambda p: ''):
        self.name = name
        self.checksum_of = checksum_of
        self.vms: dict[str, dict] = {}
        self.assets: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.inspect_error: Optional[Exception] = None
        self.fail: dict[str, Exception] = {}
        self._next_id = 1
        self.host: Optional[HypervisorRecord] = None

    def add_vm(
        self,
        name: str,
        *,
        power: str = 'on',
        datastore: str = 'datastore1',
        **attrs: str,
    ) -> None:
        full = {key: '' for key in DIFF_ATTRS}
        full.update({k: str(v) for k, v in attrs.items()})
        self.vms[name] = {
            'vmid': str(self._next_id),
            'power': power,
            'datastore': datastore,
            'attrs': full,
        }
        self._next_id += 1

    def _maybe_fail(self, method: str) -> None:
        self.calls.append((method,))
        if method in self.fail:
            raise self.fail[method]

    def inspect(self) -> HostInventory:
        assert self.host is not None
        self.calls.append(('inspect',))
        if self.inspect_error is not None:
            if isinstance(self.inspect_error, UnreachableError):
                self.host.status = Reachability.UNREACHABLE
            raise self.inspect_error
        self.host.status = Reachability.REACHABLE
        vms = []
        for name, rec in self.vms.items():
            iso = rec['attrs'].get('iso', '')
            vms.append(
                ActualVM(
                    name=name,
                    host=self.name,
                    vmid=rec['vmid'],
                    vmx_path=vmx_path(rec['datastore'], name),
                    datastore=rec['datastore'],
                    power_state=rec['power'],
                    attrs=dict(rec['attrs']),
                    asset_checksums=(
                        {iso: self.assets[iso]} if iso in self.assets else {}
                    ),
                )
            )
        assets = [AssetRecord(path=p, checksum=c) for p, c in self.assets.items()]
        return HostInventory(host=self.name, vms=vms, assets=assets)

    def create(self, vm: DesiredVM, iso_path: str) -> ActionStatus:
        self._maybe_fail('create')
        if vm.name in self.vms:
            raise ESXiVMError(f'{self.name}: {vm.name} already exists')
        attrs = {key: vm.creation_value(key) for key in DIFF_ATTRS}
        attrs['iso'] = iso_path
        self.add_vm(vm.name, datastore=vm.creation_value('datastore'), **attrs)
        return ActionStatus.APPLIED

    def destroy(self, name: str, *, force: bool = False) -> ActionStatus:
        self._maybe_fail('destroy')
        if name not in self.vms:
            return ActionStatus.ALREADY_ABSENT
        del self.vms[name]
        return ActionStatus.APPLIED

    def set_attribute(
        self, name: str, attr: str, value: str, *, force: bool = False
    ) -> ActionStatus:
        self._maybe_fail('set_attribute')
        if name not in self.vms:
            raise ESXiVMError(f'{self.name}: {name} is not registered')
        self.vms[name]['attrs'][attr] = value
        return ActionStatus.APPLIED

    def power(self, name: str, op: str, *, force: bool = False) -> ActionStatus:
        self._maybe_fail('power')
        self.vms[name]['power'] = 'off' if op == 'off' else 'on'
        return ActionStatus.APPLIED

    def upload_asset(self, local_path: str, remote_path: str) -> ActionStatus:
        self._maybe_fail('upload_asset')
        self.assets[remote_path] = self.checksum_of(local_path)
        return ActionStatus.APPLIED

    def remove_asset(self, remote_path: str) -> ActionStatus:
        self._maybe_fail('remove_asset')
        if remote_path not in self.assets:
            return ActionStatus.ALREADY_ABSENT
        del self.assets[remote_path]
        return ActionStatus.APPLIED


class FakeFleet:
    """A set of fake hypervisors plus the matching records and probe factory."""

    def __init__(self, names: list[str], checksums: Optional[dict[str, str]] = None):
        self.checksums = dict(checksums or {})
        self.hvs = {
            name: FakeHypervisor(name, checksum_of=self.checksum_of) for name in names
        }
        self.records = [
            HypervisorRecord(name=name, hostname=f'{name}.example.com')
            for name in names
        ]

    def checksum_of(self, path: str) -> str:
        return self.checksums.get(path, '')

    def __getitem__(self, name: str) -> FakeHypervisor:
        return self.hvs[name]

    def factory(self, host: HypervisorRecord) -> FakeHypervisor:
        hv = self.hvs[host.name]
        hv.host = host
        return hv


def desired_vm(name: str, host: str, **attrs: object) -> DesiredVM:
    from esxivm.config import BUILTIN_VM_DEFAULTS

    return DesiredVM(
        name=name,
        host=host,
        attrs={k: (v if isinstance(v, Attr) else Attr.of(v)) for k, v in attrs.items()},
        creation_defaults=dict(BUILTIN_VM_DEFAULTS),
    )


@pytest.fixture
def fake_fleet() -> Callable[..., FakeFleet]:
    return FakeFleet


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[str], Path]:
    def _write(text: str) -> Path:
        path = tmp_path / 'esxivm.toml'
        path.write_text(textwrap.dedent(text), encoding='utf-8')
        return path

    return _write
