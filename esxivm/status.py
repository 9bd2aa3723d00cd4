"""Text rendering for configuration listings, fleet maps, plans and results."""

from __future__ import annotations

import time
from typing import Iterable, Optional

from .config import FleetConfig
from .model import (
    VM_ATTRS,
    ActionPlan,
    ActionResult,
    ActionStatus,
    DiffWarning,
    FleetMap,
    HostError,
    Reachability,
    VMState,
)


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def clip(text: str, *, max_lines: int = 60) -> str:
    lines = (text or '').strip().splitlines()
    if len(lines) <= max_lines:
        return '\n'.join(lines)
    keep: list[str] = list(lines[:max_lines])
    keep.append(f'... ({len(lines) - max_lines} more lines)')
    return '\n'.join(keep)


def _reach_ok(status: Reachability) -> bool | None:
    if status == Reachability.REACHABLE:
        return True
    if status == Reachability.UNREACHABLE:
        return False
    return None


def render_config(cfg: FleetConfig, *, with_status: bool = False) -> str:
    """List hypervisors and their VMs; ``*`` marks values not taken from the hypervisor."""
    lines: list[str] = [f'📄 Config: {cfg.path}', '']
    for hv in cfg.hypervisors:
        label = f'{hv.name} ({hv.ssh_username}@{hv.hostname}:{hv.ssh_port})'
        if with_status:
            lines.append(status_line(_reach_ok(hv.status), label, hv.status.value))
        else:
            lines.append(f'🖥️ {label}')
        vms = [vm for vm in cfg.vms if vm.host == hv.name]
        if not vms:
            lines.append('    (no virtual machines)')
        for vm in vms:
            lines.append(f'  - {vm.name}')
            for key in VM_ATTRS:
                attr = vm.attr(key)
                if attr.is_absent:
                    continue
                inherited = key in hv.overrides and hv.overrides[key] == attr
                mark = ' ' if inherited else '*'
                lines.append(f'     {mark} {key} = {attr}')
    return '\n'.join(lines)


def render_fleet(
    fleet: FleetMap,
    host_errors: Iterable[HostError] = (),
    *,
    cached: bool = False,
    states: Optional[dict[str, VMState]] = None,
) -> str:
    age = max(0.0, time.time() - fleet.captured_at)
    source = f'cached, {age:.0f}s old' if cached else 'fresh probe'
    lines: list[str] = [f'🧭 Fleet map ({source})']
    if fleet.partial:
        lines.append(status_line(None, 'Partial map', 'not every hypervisor was probed'))
    lines.append('')
    errors = {err.host: err for err in host_errors}
    for host in sorted(fleet.host_status):
        status = fleet.host_status[host]
        err = errors.get(host)
        detail = f'{err.kind}: {err.message}' if err else status.value
        lines.append(status_line(_reach_ok(status), f'Hypervisor {host}', detail))
        for vm in sorted(fleet.instances_on(host), key=lambda v: v.name):
            flag = ' ⚠ collision' if vm.name in fleet.collisions else ''
            state = ''
            if states and vm.name in states:
                state = f' [{states[vm.name].value}]'
            lines.append(
                f'    {vm.name}: power={vm.power_state} '
                f'mem={vm.attr("memory_mb") or "?"}M '
                f'cpus={vm.attr("vcpus") or "?"} '
                f'ds={vm.datastore or "?"}{state}{flag}'
            )
        assets = fleet.assets.get(host, [])
        if assets:
            lines.append(f'    iso assets: {len(assets)}')
    if fleet.collisions:
        lines.append('')
        for col in fleet.collisions.values():
            lines.append(
                status_line(
                    False, f'Collision {col.name}', f'on {", ".join(col.hosts)}'
                )
            )
    return '\n'.join(lines)


def render_plan(plan: ActionPlan, warnings: Iterable[DiffWarning] = ()) -> str:
    lines: list[str] = []
    warnings = list(warnings)
    if plan.is_empty:
        lines.append(status_line(True, 'Nothing to do', 'fleet matches configuration'))
    else:
        lines.append(f'📝 Plan: {len(plan)} action(s)')
        for idx, action in enumerate(plan, start=1):
            lines.append(f'  {idx:>3}. {action.describe()}')
    for w in warnings:
        lines.append(status_line(None, f'{w.host}/{w.vm}', f'{w.kind}: {w.message}'))
    return '\n'.join(lines)


def render_results(results: Iterable[ActionResult]) -> str:
    lines: list[str] = []
    for r in results:
        if r.status == ActionStatus.FAILED:
            ok: bool | None = False
        elif r.status in (ActionStatus.SKIPPED, ActionStatus.DEFERRED):
            ok = None
        else:
            ok = True
        detail = r.status.value
        if r.detail:
            detail += f': {clip(r.detail, max_lines=5)}'
        lines.append(status_line(ok, r.action.describe(), detail))
    return '\n'.join(lines)
