"""Action executor: carry out an action plan against the hypervisors.

Actions of one VM run in plan order; different VMs run concurrently. A
failed action only stops the remaining actions of its own VM.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Iterable, Optional

from loguru import logger

from .errors import ESXiVMError
from .model import (
    Action,
    ActionKind,
    ActionPlan,
    ActionResult,
    ActionStatus,
    DesiredVM,
    FleetMap,
    HostError,
    HypervisorRecord,
    VMState,
)
from .probe import Probe, ProbeFactory
from .reconcile import ChecksumFn, local_checksum
from .runtime import iso_dir, remote_iso_path
from .transport import TransportError

log = logger


class _AssetLocks:
    """One lock per (host, remote asset path)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    def get(self, host: str, path: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((host, path), threading.Lock())


class Executor:
    def __init__(
        self,
        probe_factory: ProbeFactory,
        hosts: Iterable[HypervisorRecord],
        *,
        fleet: Optional[FleetMap] = None,
        desired: Optional[Iterable[DesiredVM]] = None,
        checksum_of: ChecksumFn = local_checksum,
    ):
        self.probe_factory = probe_factory
        self.hosts = {h.name: h for h in hosts}
        self.fleet = fleet
        self.desired = {vm.name: vm for vm in (desired or [])}
        self.checksum_of = checksum_of
        self.locks = _AssetLocks()
        # (host, checksum or remote path) -> remote path uploaded in this run
        self._uploaded: dict[tuple[str, str], str] = {}

    def _probe(self, host: str) -> Probe:
        record = self.hosts.get(host)
        if record is None:
            raise ESXiVMError(f'unknown hypervisor {host!r}')
        return self.probe_factory(record)

    def _desired(self, name: str) -> DesiredVM:
        vm = self.desired.get(name)
        if vm is None:
            raise ESXiVMError(f'no desired state known for {name!r}')
        return vm

    def _datastore(self, action: Action) -> str:
        if self.fleet is not None:
            for vm in self.fleet.instances_on(action.host):
                if vm.name == action.vm and vm.datastore:
                    return vm.datastore
        return self._desired(action.vm).creation_value('datastore')

    def ensure_asset(
        self, probe: Probe, host: str, local_iso: str, datastore: str, *, trust: bool
    ) -> str:
        """Return a remote path holding ``local_iso``, uploading it if needed."""
        target = remote_iso_path(datastore, local_iso)
        if trust:
            key = target
            checksum = ''
        else:
            checksum = self.checksum_of(local_iso)
            if not checksum:
                raise ESXiVMError(f'the ISO file {local_iso!r} does not exist')
            key = checksum
        with self.locks.get(host, target):
            known = self._uploaded.get((host, key))
            if known:
                return known
            if self.fleet is not None:
                if trust:
                    if self.fleet.asset_checksum(host, target):
                        return target
                else:
                    found = self.fleet.asset_by_checksum(
                        host, checksum, prefix=iso_dir(datastore) + '/'
                    )
                    if found is not None:
                        log.info(
                            'Reusing {}:{} (same checksum as {})',
                            host,
                            found.path,
                            local_iso,
                        )
                        self._uploaded[(host, key)] = found.path
                        return found.path
            probe.upload_asset(local_iso, target)
            self._uploaded[(host, key)] = target
            return target

    def execute(self, action: Action) -> ActionStatus:
        policy = action.policy
        probe = self._probe(action.host)
        kind = action.kind
        if kind == ActionKind.CREATE:
            vm = self._desired(action.vm)
            iso = vm.creation_value('iso')
            remote = ''
            if iso:
                remote = self.ensure_asset(
                    probe,
                    action.host,
                    iso,
                    vm.creation_value('datastore'),
                    trust=policy.trust,
                )
            return probe.create(vm, remote)
        if kind in (ActionKind.DESTROY, ActionKind.MIGRATE_DESTROY_OTHER):
            return probe.destroy(action.vm, force=policy.force)
        if kind == ActionKind.REMOVE_ASSET:
            with self.locks.get(action.host, action.asset):
                return probe.remove_asset(action.asset)
        if kind == ActionKind.DEFER_UPDATE_ATTR:
            actual = self.fleet.lookup(action.vm) if self.fleet is not None else None
            if actual is None or not actual.powered_off:
                log.info(
                    'Deferring {} until {} is powered off', action.attr, action.vm
                )
                return ActionStatus.DEFERRED
        if kind in (ActionKind.UPDATE_ATTR, ActionKind.DEFER_UPDATE_ATTR):
            value = action.value.value if action.value is not None else ''
            if action.attr == 'iso' and value:
                value = self.ensure_asset(
                    probe,
                    action.host,
                    value,
                    self._datastore(action),
                    trust=policy.trust,
                )
            return probe.set_attribute(
                action.vm, action.attr, value, force=policy.force
            )
        raise ESXiVMError(f'unsupported action kind {kind!r}')

    def run_group(self, actions: list[Action]) -> list[ActionResult]:
        results: list[ActionResult] = []
        blocked = ''
        for action in actions:
            if blocked:
                results.append(
                    ActionResult(
                        action, ActionStatus.SKIPPED, f'skipped after: {blocked}'
                    )
                )
                continue
            try:
                status = self.execute(action)
            except (ESXiVMError, TransportError, ValueError, OSError) as ex:
                log.warning('Action failed: {}: {}', action.describe(), ex)
                results.append(ActionResult(action, ActionStatus.FAILED, str(ex)))
                blocked = action.describe()
                continue
            except Exception as ex:
                log.exception('Action crashed: {}', action.describe())
                results.append(
                    ActionResult(
                        action, ActionStatus.FAILED, f'{type(ex).__name__}: {ex}'
                    )
                )
                blocked = action.describe()
                continue
            log.info('{}: {}', action.describe(), status.value)
            results.append(ActionResult(action, status))
        return results


def group_by_vm(plan: ActionPlan) -> dict[str, list[Action]]:
    groups: dict[str, list[Action]] = {}
    for action in plan:
        groups.setdefault(action.vm, []).append(action)
    return groups


def apply(
    plan: ActionPlan,
    probe_factory: ProbeFactory,
    hosts: Iterable[HypervisorRecord],
    *,
    fleet: Optional[FleetMap] = None,
    desired: Optional[Iterable[DesiredVM]] = None,
    max_workers: int = 4,
    checksum_of: ChecksumFn = local_checksum,
) -> list[ActionResult]:
    """Execute ``plan`` and return one result per action, in plan order.

    ``fleet`` is the map the plan was computed from; it is used to reuse
    assets already on a host and to decide whether a deferred change can be
    applied now. It may be ``None`` when running without a fleet map.
    """
    if plan.is_empty:
        return []
    executor = Executor(
        probe_factory, hosts, fleet=fleet, desired=desired, checksum_of=checksum_of
    )
    groups = group_by_vm(plan)
    workers = max(1, min(max_workers, len(groups)))
    by_action: dict[int, ActionResult] = {}
    pool = ThreadPoolExecutor(max_workers=workers)
    futures: dict[Future, str] = {}
    try:
        futures = {
            pool.submit(executor.run_group, acts): vm for vm, acts in groups.items()
        }
        for fut in as_completed(futures):
            for result in fut.result():
                by_action[id(result.action)] = result
    except BaseException:
        for fut in futures:
            fut.cancel()
        pool.shutdown(wait=False, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return [by_action[id(action)] for action in plan]


def exit_code(
    results: Iterable[ActionResult], host_errors: Iterable[HostError] = ()
) -> int:
    """0 when everything succeeded, 1 on any failed action or host error."""
    if list(host_errors):
        return 1
    if any(not r.ok for r in results):
        return 1
    return 0


def vm_states(
    desired: Iterable[DesiredVM],
    fleet: Optional[FleetMap],
    plan: Optional[ActionPlan] = None,
    results: Optional[Iterable[ActionResult]] = None,
) -> dict[str, VMState]:
    """Where each VM is in unknown -> probed -> unchanged/planned -> applied/failed."""
    results = list(results or [])
    names = [vm.name for vm in desired]
    hosts = {vm.name: vm.host for vm in desired}
    if plan is not None:
        for name in plan.vm_names():
            if name not in hosts:
                names.append(name)
                hosts[name] = plan.for_vm(name)[0].host

    states: dict[str, VMState] = {}
    for name in names:
        if fleet is None or not fleet.is_reachable(hosts[name]):
            states[name] = VMState.UNKNOWN
            continue
        if plan is None:
            states[name] = VMState.PROBED
            continue
        if plan.for_vm(name):
            mine = [r for r in results if r.action.vm == name]
            if not mine:
                states[name] = VMState.PLANNED
            elif all(r.ok for r in mine):
                states[name] = VMState.APPLIED
            else:
                states[name] = VMState.FAILED
            continue
        if name in fleet.collisions:
            states[name] = VMState.PROBED
        else:
            states[name] = VMState.UNCHANGED
    return states
