from __future__ import annotations

import sys
from pathlib import Path
from typing import Sequence

import scriptconfig as scfg
from loguru import logger

from ..cache import StateCache, cache_path_for
from ..config import (
    FleetConfig,
    config_path,
    load,
    parse_target,
    parse_validity_window,
    select_vms,
)
from ..errors import ESXiVMError, PreconditionError
from ..executor import apply, exit_code
from ..fleet import build_fleet_map, refresh_hosts
from ..model import (
    ActionKind,
    ActionPlan,
    DesiredVM,
    FleetMap,
    HostError,
    Policy,
)
from ..probe import ProbeFactory, ssh_probe_factory
from ..reconcile import diff
from ..runtime import missing_local_commands
from ..status import render_plan, render_results, status_line

log = logger

DESTRUCTIVE_KINDS = (ActionKind.DESTROY, ActionKind.MIGRATE_DESTROY_OTHER)


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: $ESXIVM_CONFIG or esxivm.toml).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Do not ask before destroying virtual machines.',
    )


class _FleetOptions(_BaseCommand):
    """Options controlling how the fleet map is obtained."""

    cache_ttl = scfg.Value(
        None,
        help='Seconds a cached fleet map stays valid, or "bypass" to always probe.',
    )
    strict = scfg.Value(
        False,
        isflag=True,
        help='Abort when any hypervisor is unreachable.',
    )


class _PolicyOptions(_FleetOptions):
    """Reconciliation policy flags."""

    force = scfg.Value(
        False,
        isflag=True,
        help='Power off VMs hard when a graceful shutdown fails.',
    )
    skip_removal = scfg.Value(
        False,
        isflag=True,
        help='Keep ISO images that are no longer used by any VM.',
    )
    relocate = scfg.Value(
        False,
        isflag=True,
        help='Destroy a VM found on the wrong hypervisor and recreate it.',
    )
    no_map = scfg.Value(
        False,
        isflag=True,
        help='Probe only the hypervisors of the selected VMs.',
    )
    trust = scfg.Value(
        False,
        isflag=True,
        help='Compare ISO images by file name instead of checksum.',
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Print the plan without applying it.'
    )


def _cfg_path(p: str | None) -> Path:
    return config_path(p)


def _load_cfg_with_path(config: str | None) -> tuple[FleetConfig, Path]:
    path = _cfg_path(config)
    return load(path), path


def _load_cfg(config: str | None) -> FleetConfig:
    cfg, _ = _load_cfg_with_path(config)
    return cfg


def _split_names(raw: object) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(x) for x in raw]
    else:
        items = str(raw).split(',')
    return [item.strip() for item in items if item.strip()]


def _confirm(*, yes: bool, purpose: str) -> None:
    if yes:
        return
    if not sys.stdin.isatty():
        raise ESXiVMError(
            'Destructive operations require confirmation, but stdin is not '
            'interactive. Re-run with --yes.'
        )
    print('About to run destructive operations:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise ESXiVMError('Aborted by user.')


def _probe_factory(cfg: FleetConfig) -> ProbeFactory:
    missing = missing_local_commands()
    if missing:
        raise PreconditionError(
            f'Missing local commands: {", ".join(missing)}. '
            'Install openssh-client and sshpass.'
        )
    s = cfg.settings
    return ssh_probe_factory(
        timeout=s.timeout, retries=s.retries, backoff=s.retry_backoff
    )


def _policy(args, *, no_map: bool = False) -> Policy:
    return Policy(
        force=bool(args.force),
        skip_removal=bool(args.skip_removal),
        relocate=bool(args.relocate),
        no_map=bool(args.no_map) or no_map,
        trust=bool(args.trust),
    )


def _cache_ttl(cfg: FleetConfig, raw: object) -> float | str:
    if raw is None or raw == '':
        return cfg.settings.cache_ttl
    try:
        return parse_validity_window(raw)
    except (TypeError, ValueError) as ex:
        raise ESXiVMError(f'--cache_ttl: {ex}')


def _acquire_fleet(
    cfg: FleetConfig,
    path: Path,
    *,
    cache_ttl: float | str,
    strict: bool = False,
    scope: list[str] | None = None,
    probe_factory: ProbeFactory | None = None,
) -> tuple[FleetMap, list[HostError], bool]:
    """Return ``(fleet, host_errors, from_cache)``.

    A scoped build always probes and is never written to the cache.
    """
    cache = StateCache(cache_path_for(path))
    if scope is None:
        fleet, ok = cache.load(cache_ttl)
        if ok and fleet is not None:
            return fleet, [], True
    factory = probe_factory or _probe_factory(cfg)
    fleet, errors = build_fleet_map(
        cfg.hypervisors,
        factory,
        ignore_unreachable=cfg.settings.ignore_unreachable and not strict,
        max_workers=cfg.settings.max_workers,
        scope=scope,
    )
    if scope is None:
        cache.store(fleet)
    return fleet, errors, False


def _store_refreshed(
    cfg: FleetConfig,
    path: Path,
    fleet: FleetMap,
    touched: list[str],
    factory: ProbeFactory,
) -> list[HostError]:
    """Re-probe hypervisors changed by an apply and update the cache."""
    if not touched:
        return []
    fresh, errors = refresh_hosts(
        fleet,
        cfg.hypervisors,
        touched,
        factory,
        ignore_unreachable=True,
        max_workers=cfg.settings.max_workers,
    )
    StateCache(cache_path_for(path)).store(fresh)
    return errors


def _run_reconcile(
    args,
    cfg: FleetConfig,
    path: Path,
    *,
    desired: list[DesiredVM],
    targets: Sequence[tuple[str, str]] = (),
    only_kinds: tuple[ActionKind, ...] | None = None,
    probe_factory: ProbeFactory | None = None,
    dry_run: bool = False,
    no_map: bool = False,
) -> int:
    """Shared plan/apply pipeline of ``plan``, ``apply``, ``create`` and ``destroy``."""
    policy = _policy(args, no_map=no_map)
    scope = None
    if policy.no_map:
        scope = sorted({vm.host for vm in desired} | {host for host, _ in targets})
    factory = probe_factory or _probe_factory(cfg)
    fleet, host_errors, _ = _acquire_fleet(
        cfg,
        path,
        cache_ttl=_cache_ttl(cfg, args.cache_ttl),
        strict=bool(args.strict),
        scope=scope,
        probe_factory=factory,
    )
    plan, warnings = diff(
        desired,
        fleet,
        policy=policy,
        targets=targets,
        managed=[vm.name for vm in cfg.vms],
    )
    if only_kinds is not None:
        # Drop every VM that needs anything besides the requested kinds.
        plan = ActionPlan(
            actions=[
                a
                for a in plan
                if all(b.kind in only_kinds for b in plan.for_vm(a.vm))
            ]
        )
    print(render_plan(plan, warnings))
    if dry_run or args.dry_run or plan.is_empty:
        return exit_code([], host_errors)

    doomed = sorted({f'{a.host}/{a.vm}' for a in plan if a.kind in DESTRUCTIVE_KINDS})
    if doomed:
        _confirm(yes=bool(args.yes), purpose=f'Destroy {", ".join(doomed)}')
    results = apply(
        plan,
        factory,
        cfg.hypervisors,
        fleet=fleet,
        desired=cfg.vms,
        max_workers=cfg.settings.max_workers,
    )
    print(render_results(results))
    if scope is None:
        touched = sorted({r.action.host for r in results if r.ok})
        host_errors = host_errors + _store_refreshed(
            cfg, path, fleet, touched, factory
        )
    rc = exit_code(results, host_errors)
    ok = rc == 0
    print(status_line(ok, 'Apply', 'done' if ok else 'finished with failures'))
    return rc


__all__ = [name for name in globals() if not name.startswith('__')]
