"""Reconciler: compare desired VMs to a fleet map and produce an action plan.

Nothing here touches a hypervisor. Re-running ``diff`` against a fleet map
that already reflects an applied plan produces an empty plan.
"""

from __future__ import annotations

import functools
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

import ubelt as ub
from loguru import logger

from .model import (
    DIFF_ATTRS,
    LIVE_ATTRS,
    Action,
    ActionKind,
    ActionPlan,
    ActualVM,
    Attr,
    DesiredVM,
    DiffWarning,
    FleetMap,
    Policy,
)

log = logger

NUMERIC_ATTRS = ('memory_mb', 'vcpus', 'disk_gb')

W_RELOCATION = 'relocation'
W_COLLISION = 'collision'
W_UNREACHABLE = 'unreachable'
W_PARTIAL = 'partial-map'
W_NOT_FOUND = 'not-found'
W_MANAGED = 'managed-target'
W_SHRINK = 'shrink-refused'
W_MISSING_ISO = 'missing-iso'
W_UNSUPPORTED = 'unsupported'

ChecksumFn = Callable[[str], str]


@functools.lru_cache(maxsize=64)
def _cached_checksum(path: str, mtime: float, size: int) -> str:
    return ub.hash_file(path, hasher='md5')


def local_checksum(path: str) -> str:
    """md5 of a local file (what ``md5sum`` reports on the hypervisor)."""
    p = Path(path).expanduser()
    if not p.is_file():
        return ''
    st = p.stat()
    return _cached_checksum(str(p), st.st_mtime, st.st_size)


def _same_value(key: str, want: str, have: str) -> bool:
    if key in NUMERIC_ATTRS:
        try:
            return int(want) == int(have)
        except ValueError:
            return want == have
    if key == 'dns_servers':
        return [s.strip() for s in want.split(',') if s.strip()] == [
            s.strip() for s in have.split(',') if s.strip()
        ]
    if key == 'autostart':
        # no autostart entry and an explicit empty both mean off
        return (want or 'false').lower() == (have or 'false').lower()
    return want == have


def _change(
    vm: DesiredVM, actual: ActualVM, key: str, want: Attr, policy: Policy
) -> Action:
    kind = (
        ActionKind.UPDATE_ATTR if key in LIVE_ATTRS else ActionKind.DEFER_UPDATE_ATTR
    )
    return Action(
        kind=kind,
        vm=vm.name,
        host=actual.host,
        policy=policy,
        attr=key,
        value=want,
        old_value=actual.attr(key),
    )


class _Planner:
    def __init__(
        self,
        fleet: FleetMap,
        policy: Policy,
        checksum_of: ChecksumFn,
        desired: list[DesiredVM],
    ):
        self.fleet = fleet
        self.policy = policy
        self.checksum_of = checksum_of
        self.by_vm: dict[str, list[Action]] = {}
        self.warnings: list[DiffWarning] = []
        # (host, asset path) -> names of VMs that stop using it in this plan
        self.released: dict[tuple[str, str], list[str]] = {}
        self.reserved: dict[str, set[str]] = {}
        for vm in desired:
            iso = vm.attr('iso')
            if iso.is_set:
                checksum = checksum_of(iso.value)
                if checksum:
                    self.reserved.setdefault(vm.host, set()).add(checksum)

    def warn(self, vm: str, host: str, kind: str, message: str) -> None:
        log.warning('{}/{}: {}', host, vm, message)
        self.warnings.append(DiffWarning(vm=vm, host=host, kind=kind, message=message))

    def add(self, action: Action) -> None:
        self.by_vm.setdefault(action.vm, []).append(action)

    def release(self, actual: ActualVM, path: str) -> None:
        if path:
            self.released.setdefault((actual.host, path), []).append(actual.name)

    def plan_desired(self, vm: DesiredVM) -> None:
        fleet = self.fleet
        if not fleet.is_reachable(vm.host):
            self.warn(
                vm.name,
                vm.host,
                W_UNREACHABLE,
                f'hypervisor {vm.host} was not probed successfully; skipping',
            )
            return
        if vm.name in fleet.collisions:
            hosts = ', '.join(fleet.collisions[vm.name].hosts)
            self.warn(
                vm.name,
                vm.host,
                W_COLLISION,
                f'name is registered on several hypervisors ({hosts}); '
                'resolve the collision before reconciling this VM',
            )
            return
        iso = vm.attr('iso')
        if iso.is_set and not self.policy.trust and not self.checksum_of(iso.value):
            self.warn(
                vm.name,
                vm.host,
                W_MISSING_ISO,
                f'the ISO file {iso.value!r} does not exist locally; skipping',
            )
            return
        actual = fleet.lookup(vm.name)
        if actual is None:
            self.add(Action(ActionKind.CREATE, vm.name, vm.host, self.policy))
            return
        if actual.host != vm.host:
            self.plan_relocation(vm, actual)
            return
        self.plan_attributes(vm, actual)

    def plan_relocation(self, vm: DesiredVM, actual: ActualVM) -> None:
        if self.fleet.partial:
            self.warn(
                vm.name,
                vm.host,
                W_PARTIAL,
                f'found on {actual.host} instead of {vm.host}, but the fleet map '
                'is partial; relocation needs a full map',
            )
            return
        if not self.policy.relocate:
            self.warn(
                vm.name,
                vm.host,
                W_RELOCATION,
                f'found on {actual.host} instead of {vm.host}; '
                'use --relocate to destroy the stray instance and recreate it',
            )
            return
        self.add(
            Action(
                ActionKind.MIGRATE_DESTROY_OTHER, vm.name, actual.host, self.policy
            )
        )
        self.release(actual, actual.attr('iso'))
        self.add(Action(ActionKind.CREATE, vm.name, vm.host, self.policy))

    def _boot_media_changed(self, want: Attr, actual: ActualVM) -> bool:
        have = actual.attr('iso')
        if want.is_empty:
            return bool(have)
        if not have:
            return True
        if self.policy.trust:
            return os.path.basename(want.value) != os.path.basename(have)
        have_sum = actual.asset_checksums.get(have) or self.fleet.asset_checksum(
            actual.host, have
        )
        want_sum = self.checksum_of(want.value)
        return not (want_sum and want_sum == have_sum)

    def plan_attributes(self, vm: DesiredVM, actual: ActualVM) -> None:
        for key in DIFF_ATTRS:
            want = vm.attr(key)
            if want.is_absent:
                continue
            have = actual.attr(key)
            if key == 'iso':
                if self._boot_media_changed(want, actual):
                    self.add(_change(vm, actual, key, want, self.policy))
                    self.release(actual, have)
                continue
            if want.is_empty:
                if not _same_value(key, '', have):
                    self.add(_change(vm, actual, key, want, self.policy))
                continue
            if _same_value(key, want.value, have):
                continue
            if key == 'disk_gb':
                if not have:
                    self.warn(
                        vm.name,
                        vm.host,
                        W_UNSUPPORTED,
                        'cannot add a disk to an existing VM; recreate it instead',
                    )
                    continue
                if int(want.value) < int(have):
                    self.warn(
                        vm.name,
                        vm.host,
                        W_SHRINK,
                        f'refusing to shrink disk from {have}G to {want.value}G',
                    )
                    continue
            self.add(_change(vm, actual, key, want, self.policy))

    def plan_target(self, host: str, name: str, managed: set[str]) -> None:
        if name in managed:
            self.warn(
                name,
                host,
                W_MANAGED,
                'is declared in the configuration; remove it from there first',
            )
            return
        if not self.fleet.is_reachable(host):
            self.warn(
                name, host, W_UNREACHABLE, f'hypervisor {host} was not probed; skipping'
            )
            return
        found = [vm for vm in self.fleet.instances_on(host) if vm.name == name]
        if not found:
            self.warn(name, host, W_NOT_FOUND, 'no such VM on the hypervisor')
            return
        actual = found[0]
        self.add(Action(ActionKind.DESTROY, name, host, self.policy))
        self.release(actual, actual.attr('iso'))

    def plan_cleanup(self) -> None:
        if self.policy.skip_removal:
            return
        for (host, path), leaving in self.released.items():
            checksum = self.fleet.asset_checksum(host, path)
            if not checksum:
                # Only assets seen in the inventory are ever removed.
                continue
            if checksum in self.reserved.get(host, set()):
                continue
            users = set(self.fleet.asset_users(host, path)) - set(leaving)
            if users:
                continue
            owner = leaving[-1]
            self.add(
                Action(
                    ActionKind.REMOVE_ASSET,
                    owner,
                    host,
                    self.policy,
                    asset=path,
                )
            )

    def plan(self) -> ActionPlan:
        actions: list[Action] = []
        for items in self.by_vm.values():
            actions.extend(items)
        return ActionPlan(actions=actions)


def diff(
    desired: list[DesiredVM],
    fleet: FleetMap,
    *,
    policy: Optional[Policy] = None,
    targets: Iterable[tuple[str, str]] = (),
    managed: Optional[Iterable[str]] = None,
    checksum_of: ChecksumFn = local_checksum,
) -> tuple[ActionPlan, list[DiffWarning]]:
    """Compute the ordered action plan that moves ``fleet`` toward ``desired``.

    Args:
        desired: the VMs to reconcile.
        fleet: a fresh or cached fleet map.
        policy: flags copied onto every planned action.
        targets: explicit ``(hypervisor, vm)`` pairs to destroy; only VMs not
            declared in the configuration may be targeted.
        managed: every VM name declared in the configuration, used to protect
            managed VMs from explicit targets. Defaults to ``desired``.
        checksum_of: computes the checksum of a local ISO path.
    """
    policy = policy or Policy()
    planner = _Planner(fleet, policy, checksum_of, desired)
    managed_names = set(managed) if managed is not None else {v.name for v in desired}
    for vm in desired:
        planner.plan_desired(vm)
    for host, name in targets:
        planner.plan_target(host, name, managed_names)
    planner.plan_cleanup()
    plan = planner.plan()
    log.debug('Planned {} actions, {} warnings', len(plan), len(planner.warnings))
    return plan, planner.warnings
