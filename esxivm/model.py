"""Data model shared by the probe, fleet builder, cache, reconciler and executor.

Desired state comes from configuration (``HypervisorRecord``, ``DesiredVM``),
actual state comes from probing (``ActualVM``, ``AssetRecord``, ``FleetMap``),
and the reconciler connects them through an ``ActionPlan``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterator

# VM attributes understood by the reconciler.
LIVE_ATTRS = ('network_name', 'autostart', 'iso')
REBOOT_ATTRS = (
    'memory_mb',
    'vcpus',
    'guest_type',
    'ipv4_address',
    'ipv4_netmask',
    'ipv4_gateway',
    'dns_servers',
    'disk_gb',
)
PLACEMENT_ATTRS = ('datastore',)
VM_ATTRS = LIVE_ATTRS + REBOOT_ATTRS + PLACEMENT_ATTRS
DIFF_ATTRS = LIVE_ATTRS + REBOOT_ATTRS
# Attributes whose explicit empty value means "remove it" (autostart: off).
CLEARABLE_ATTRS = (
    'iso',
    'ipv4_address',
    'ipv4_gateway',
    'dns_servers',
    'autostart',
)


class Reachability(str, enum.Enum):
    UNKNOWN = 'unknown'
    REACHABLE = 'reachable'
    UNREACHABLE = 'unreachable'


def normalize_value(raw: object) -> str:
    if isinstance(raw, bool):
        return 'true' if raw else 'false'
    if isinstance(raw, (list, tuple)):
        return ','.join(str(item).strip() for item in raw if str(item).strip())
    return str(raw).strip()


@dataclass(frozen=True)
class Attr:
    """A configured attribute: present with a value, explicitly empty, or absent."""

    state: str
    value: str = ''

    ABSENT = 'absent'
    EMPTY = 'empty'
    VALUE = 'value'

    @classmethod
    def absent(cls) -> 'Attr':
        return cls(cls.ABSENT)

    @classmethod
    def empty(cls) -> 'Attr':
        return cls(cls.EMPTY)

    @classmethod
    def of(cls, raw: object) -> 'Attr':
        value = normalize_value(raw)
        if value == '':
            return cls.empty()
        return cls(cls.VALUE, value)

    @property
    def is_absent(self) -> bool:
        return self.state == self.ABSENT

    @property
    def is_empty(self) -> bool:
        return self.state == self.EMPTY

    @property
    def is_set(self) -> bool:
        return self.state == self.VALUE

    def __str__(self) -> str:
        if self.is_absent:
            return '(inherit)'
        if self.is_empty:
            return '(empty)'
        return self.value


@dataclass
class HypervisorRecord:
    name: str
    hostname: str
    ssh_username: str = 'root'
    ssh_port: int = 22
    ssh_password: str = ''
    ssh_password_env: str = ''
    overrides: dict[str, Attr] = field(default_factory=dict)
    # Only the probe writes this.
    status: Reachability = Reachability.UNKNOWN


@dataclass(frozen=True)
class DesiredVM:
    name: str
    host: str
    attrs: dict[str, Attr] = field(default_factory=dict)
    # Fallbacks used only when rendering a brand new VM.
    creation_defaults: dict[str, str] = field(default_factory=dict)

    def attr(self, key: str) -> Attr:
        return self.attrs.get(key, Attr.absent())

    def creation_value(self, key: str) -> str:
        a = self.attr(key)
        if a.is_set:
            return a.value
        if a.is_empty:
            return ''
        return self.creation_defaults.get(key, '')


@dataclass(frozen=True)
class ActualVM:
    name: str
    host: str
    vmid: str = ''
    vmx_path: str = ''
    datastore: str = ''
    power_state: str = 'unknown'
    attrs: dict[str, str] = field(default_factory=dict)
    asset_checksums: dict[str, str] = field(default_factory=dict)

    def attr(self, key: str) -> str:
        return self.attrs.get(key, '')

    @property
    def powered_off(self) -> bool:
        return self.power_state == 'off'


@dataclass(frozen=True)
class AssetRecord:
    path: str
    checksum: str


@dataclass(frozen=True)
class HostInventory:
    host: str
    vms: list[ActualVM] = field(default_factory=list)
    assets: list[AssetRecord] = field(default_factory=list)


@dataclass(frozen=True)
class HostError:
    host: str
    kind: str
    message: str


@dataclass(frozen=True)
class Collision:
    name: str
    hosts: list[str]
    instances: list[ActualVM] = field(default_factory=list)


@dataclass(frozen=True)
class FleetMap:
    vms: dict[str, ActualVM] = field(default_factory=dict)
    collisions: dict[str, Collision] = field(default_factory=dict)
    assets: dict[str, list[AssetRecord]] = field(default_factory=dict)
    host_status: dict[str, Reachability] = field(default_factory=dict)
    probed_hosts: list[str] = field(default_factory=list)
    partial: bool = False
    captured_at: float = 0.0

    def lookup(self, name: str) -> ActualVM | None:
        return self.vms.get(name)

    def all_instances(self) -> list[ActualVM]:
        found = list(self.vms.values())
        for col in self.collisions.values():
            found.extend(col.instances)
        return found

    def instances_on(self, host: str) -> list[ActualVM]:
        return [vm for vm in self.all_instances() if vm.host == host]

    def is_reachable(self, host: str) -> bool:
        return self.host_status.get(host) == Reachability.REACHABLE

    def asset_checksum(self, host: str, path: str) -> str:
        for asset in self.assets.get(host, []):
            if asset.path == path:
                return asset.checksum
        return ''

    def asset_by_checksum(
        self, host: str, checksum: str, *, prefix: str = ''
    ) -> AssetRecord | None:
        if not checksum:
            return None
        for asset in self.assets.get(host, []):
            if asset.checksum == checksum and asset.path.startswith(prefix):
                return asset
        return None

    def asset_users(self, host: str, path: str) -> list[str]:
        return sorted(
            vm.name for vm in self.instances_on(host) if vm.attr('iso') == path
        )


@dataclass(frozen=True)
class CacheEntry:
    fleet: FleetMap
    captured_at: float
    max_age: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.captured_at) <= self.max_age


class ActionKind(str, enum.Enum):
    CREATE = 'create'
    DESTROY = 'destroy'
    UPDATE_ATTR = 'update-attr'
    DEFER_UPDATE_ATTR = 'defer-update-attr'
    MIGRATE_DESTROY_OTHER = 'migrate-destroy-other'
    REMOVE_ASSET = 'remove-asset'


@dataclass(frozen=True)
class Policy:
    force: bool = False
    skip_removal: bool = False
    relocate: bool = False
    no_map: bool = False
    trust: bool = False


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    vm: str
    host: str
    policy: Policy = field(default_factory=Policy)
    attr: str = ''
    value: Attr | None = None
    old_value: str = ''
    asset: str = ''

    def describe(self) -> str:
        where = f'{self.host}/{self.vm}'
        if self.kind in (ActionKind.UPDATE_ATTR, ActionKind.DEFER_UPDATE_ATTR):
            new = str(self.value) if self.value is not None else ''
            old = self.old_value or '(empty)'
            return f'{self.kind.value} {where} {self.attr}: {old} -> {new}'
        if self.kind == ActionKind.REMOVE_ASSET:
            return f'{self.kind.value} {self.host}:{self.asset} (was used by {self.vm})'
        return f'{self.kind.value} {where}'


@dataclass
class ActionPlan:
    actions: list[Action] = field(default_factory=list)

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def for_vm(self, name: str) -> list[Action]:
        return [a for a in self.actions if a.vm == name]

    def vm_names(self) -> list[str]:
        seen: dict[str, None] = {}
        for a in self.actions:
            seen.setdefault(a.vm, None)
        return list(seen)


@dataclass(frozen=True)
class DiffWarning:
    vm: str
    host: str
    kind: str
    message: str


class ActionStatus(str, enum.Enum):
    APPLIED = 'applied'
    FAILED = 'failed'
    SKIPPED = 'skipped'
    DEFERRED = 'deferred'
    ALREADY_ABSENT = 'already-absent'


@dataclass(frozen=True)
class ActionResult:
    action: Action
    status: ActionStatus
    detail: str = ''

    @property
    def ok(self) -> bool:
        return self.status in (
            ActionStatus.APPLIED,
            ActionStatus.DEFERRED,
            ActionStatus.ALREADY_ABSENT,
        )


class VMState(str, enum.Enum):
    UNKNOWN = 'unknown'
    PROBED = 'probed'
    UNCHANGED = 'unchanged'
    PLANNED = 'planned'
    APPLIED = 'applied'
    FAILED = 'failed'
