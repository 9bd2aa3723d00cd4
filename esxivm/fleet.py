"""Fleet map builder: probe hypervisors concurrently and merge their inventories."""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Iterable, Optional

from loguru import logger

from .errors import (
    BuildAbortedError,
    BuildCancelledError,
    ESXiVMError,
    PreconditionError,
    ToolMissingError,
    UnreachableError,
)
from .model import (
    ActualVM,
    AssetRecord,
    Collision,
    FleetMap,
    HostError,
    HostInventory,
    HypervisorRecord,
    Reachability,
)
from .probe import ProbeFactory

log = logger

UNREACHABLE = 'unreachable'
TOOL_MISSING = 'tool-missing'
PROTOCOL_ERROR = 'protocol-error'


def merge_inventories(
    inventories: Iterable[HostInventory],
    host_status: dict[str, Reachability],
    *,
    partial: bool,
    captured_at: Optional[float] = None,
) -> FleetMap:
    """Merge per-host inventories; a name seen on several hosts is a collision."""
    by_name: dict[str, list[ActualVM]] = {}
    assets: dict[str, list[AssetRecord]] = {}
    probed: list[str] = []
    for inv in inventories:
        probed.append(inv.host)
        assets[inv.host] = list(inv.assets)
        for vm in inv.vms:
            by_name.setdefault(vm.name, []).append(vm)

    vms: dict[str, ActualVM] = {}
    collisions: dict[str, Collision] = {}
    for name, found in by_name.items():
        hosts = sorted({vm.host for vm in found})
        if len(found) == 1:
            vms[name] = found[0]
        else:
            collisions[name] = Collision(
                name=name,
                hosts=hosts,
                instances=sorted(found, key=lambda v: v.host),
            )
            log.warning(
                'Collision: vm {} is registered on {}', name, ', '.join(hosts)
            )
    return FleetMap(
        vms=vms,
        collisions=collisions,
        assets=assets,
        host_status=dict(host_status),
        probed_hosts=sorted(probed),
        partial=partial,
        captured_at=time.time() if captured_at is None else captured_at,
    )


def _host_error(host: HypervisorRecord, ex: Exception) -> HostError:
    if isinstance(ex, UnreachableError):
        kind = UNREACHABLE
    elif isinstance(ex, ToolMissingError):
        kind = TOOL_MISSING
    else:
        kind = PROTOCOL_ERROR
    return HostError(host=host.name, kind=kind, message=str(ex))


def probe_hosts(
    hosts: list[HypervisorRecord],
    probe_factory: ProbeFactory,
    *,
    ignore_unreachable: bool = True,
    max_workers: int = 4,
) -> tuple[list[HostInventory], list[HostError]]:
    """Run ``inspect`` on every host with bounded parallelism."""
    inventories: list[HostInventory] = []
    errors: list[HostError] = []
    workers = max(1, min(max_workers, len(hosts)))

    def _work(host: HypervisorRecord) -> HostInventory:
        return probe_factory(host).inspect()

    ex = ThreadPoolExecutor(max_workers=workers)
    fut_map: dict[Future, HypervisorRecord] = {}
    try:
        fut_map = {ex.submit(_work, h): h for h in hosts}
        for fut in as_completed(fut_map):
            host = fut_map[fut]
            try:
                inventories.append(fut.result())
            except UnreachableError as err:
                host.status = Reachability.UNREACHABLE
                if not ignore_unreachable:
                    raise BuildAbortedError(
                        f'Fleet map build aborted: {err}. '
                        'Use ignore_unreachable to skip unreachable hosts.'
                    )
                log.warning('Skipping unreachable hypervisor {}: {}', host.name, err)
                errors.append(_host_error(host, err))
            except ESXiVMError as err:
                log.warning('Excluding hypervisor {}: {}', host.name, err)
                errors.append(_host_error(host, err))
            except Exception as err:
                log.opt(exception=err).error(
                    'Unexpected failure probing {}: {}', host.name, err
                )
                errors.append(_host_error(host, err))
    except KeyboardInterrupt:
        for fut in fut_map:
            fut.cancel()
        ex.shutdown(wait=False, cancel_futures=True)
        raise BuildCancelledError('Fleet map build interrupted; nothing was merged.')
    except BaseException:
        ex.shutdown(wait=False, cancel_futures=True)
        raise
    ex.shutdown(wait=True)
    return inventories, errors


def build_fleet_map(
    hosts: list[HypervisorRecord],
    probe_factory: ProbeFactory,
    *,
    ignore_unreachable: bool = True,
    max_workers: int = 4,
    scope: Optional[Iterable[str]] = None,
) -> tuple[FleetMap, list[HostError]]:
    """Probe the configured hosts (or the scoped subset) into one FleetMap.

    The map is partial whenever any configured host is missing from it,
    either because it was scoped out or because probing it failed.
    """
    if not hosts:
        raise PreconditionError('Cannot build a fleet map with zero hypervisors.')
    selected = list(hosts)
    if scope is not None:
        wanted = set(scope)
        unknown = wanted - {h.name for h in hosts}
        if unknown:
            raise PreconditionError(
                f'Unknown hypervisors requested: {", ".join(sorted(unknown))}'
            )
        selected = [h for h in hosts if h.name in wanted]
        if not selected:
            raise PreconditionError('Cannot build a fleet map with zero hypervisors.')
    log.info('Probing {} of {} hypervisors', len(selected), len(hosts))
    inventories, errors = probe_hosts(
        selected,
        probe_factory,
        ignore_unreachable=ignore_unreachable,
        max_workers=max_workers,
    )
    host_status = {h.name: h.status for h in hosts}
    for inv in inventories:
        host_status[inv.host] = Reachability.REACHABLE
    for err in errors:
        if err.kind != UNREACHABLE:
            # Reachable but not usable for this build.
            host_status[err.host] = Reachability.UNKNOWN
    partial = len(inventories) < len(hosts)
    fleet = merge_inventories(inventories, host_status, partial=partial)
    return fleet, errors


def _inventory_from_map(fleet: FleetMap, host: str) -> HostInventory:
    return HostInventory(
        host=host,
        vms=fleet.instances_on(host),
        assets=list(fleet.assets.get(host, [])),
    )


def refresh_hosts(
    base: FleetMap,
    hosts: list[HypervisorRecord],
    refresh: Iterable[str],
    probe_factory: ProbeFactory,
    *,
    ignore_unreachable: bool = True,
    max_workers: int = 4,
) -> tuple[FleetMap, list[HostError]]:
    """Re-probe a subset of hosts and replace their part of an existing map."""
    wanted = set(refresh)
    selected = [h for h in hosts if h.name in wanted]
    if not selected:
        raise PreconditionError('Cannot refresh a fleet map with zero hypervisors.')
    inventories, errors = probe_hosts(
        selected,
        probe_factory,
        ignore_unreachable=ignore_unreachable,
        max_workers=max_workers,
    )
    fresh = {inv.host: inv for inv in inventories}
    failed = {err.host for err in errors}
    merged: list[HostInventory] = []
    for host in base.probed_hosts:
        if host in fresh or host in failed:
            continue
        merged.append(_inventory_from_map(base, host))
    merged.extend(fresh.values())

    host_status = dict(base.host_status)
    for h in selected:
        host_status[h.name] = h.status
    for host in fresh:
        host_status[host] = Reachability.REACHABLE
    for err in errors:
        if err.kind != UNREACHABLE:
            host_status[err.host] = Reachability.UNKNOWN
    partial = len(merged) < len(hosts)
    fleet = merge_inventories(
        merged, host_status, partial=partial, captured_at=base.captured_at
    )
    return fleet, errors
