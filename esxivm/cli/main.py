"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..cache import StateCache, cache_path_for
from ..errors import ESXiVMError
from ..executor import vm_states
from ..fleet import build_fleet_map
from ..model import ActionKind, ActionStatus
from ..probe import POWER_OPS
from ..reconcile import diff
from ..status import render_config, render_fleet, status_line
from ._common import (
    _BaseCommand,
    _FleetOptions,
    _PolicyOptions,
    _acquire_fleet,
    _cache_ttl,
    _cfg_path,
    _confirm,
    _load_cfg,
    _load_cfg_with_path,
    _probe_factory,
    _run_reconcile,
    _split_names,
    log,
    parse_target,
    select_vms,
)


class ListCLI(_BaseCommand):
    """List configured hypervisors and virtual machines."""

    probe = scfg.Value(
        False, isflag=True, help='Also check which hypervisors are reachable.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if args.probe and cfg.hypervisors:
            build_fleet_map(
                cfg.hypervisors,
                _probe_factory(cfg),
                ignore_unreachable=True,
                max_workers=cfg.settings.max_workers,
            )
        print(render_config(cfg, with_status=bool(args.probe)))
        return 0


class StatusCLI(_FleetOptions):
    """Show the fleet map: where every VM lives, collisions and host errors."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        fleet, errors, cached = _acquire_fleet(
            cfg,
            path,
            cache_ttl=_cache_ttl(cfg, args.cache_ttl),
            strict=bool(args.strict),
        )
        plan, _ = diff(cfg.vms, fleet, managed=[vm.name for vm in cfg.vms])
        states = vm_states(cfg.vms, fleet, plan)
        print(render_fleet(fleet, errors, cached=cached, states=states))
        return 0


class PlanCLI(_PolicyOptions):
    """Print the actions needed to reach the configured state."""

    vms = scfg.Value('', help='Comma-separated VM names (default: all).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        desired = select_vms(cfg, _split_names(args.vms))
        return _run_reconcile(args, cfg, path, desired=desired, dry_run=True)


class ApplyCLI(_PolicyOptions):
    """Reconcile the fleet with the configuration."""

    vms = scfg.Value('', help='Comma-separated VM names (default: all).')
    targets = scfg.Value(
        '',
        help='Comma-separated <hypervisor>/<vm> pairs of unmanaged VMs to destroy.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        desired = select_vms(cfg, _split_names(args.vms))
        targets = [parse_target(t) for t in _split_names(args.targets)]
        return _run_reconcile(args, cfg, path, desired=desired, targets=targets)


class CreateCLI(_PolicyOptions):
    """Create configured VMs that do not exist yet."""

    vms = scfg.Value('', help='Comma-separated VM names (default: all).')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        desired = select_vms(cfg, _split_names(args.vms))
        return _run_reconcile(
            args, cfg, path, desired=desired, only_kinds=(ActionKind.CREATE,)
        )


class DestroyCLI(_PolicyOptions):
    """Destroy unmanaged VMs given as <hypervisor>/<vm>."""

    targets = scfg.Value('', help='Comma-separated <hypervisor>/<vm> pairs.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        targets = [parse_target(t) for t in _split_names(args.targets)]
        if not targets:
            raise ESXiVMError('Nothing to destroy; give at least one <hypervisor>/<vm>.')
        # Destroying needs only the named hypervisors.
        return _run_reconcile(
            args, cfg, path, desired=[], targets=targets, no_map=True
        )


class PowerCLI(_BaseCommand):
    """Power configured VMs on, off, or reboot them."""

    op = scfg.Value('', help=f'One of: {", ".join(POWER_OPS)}.')
    vms = scfg.Value('', help='Comma-separated VM names (default: all).')
    force = scfg.Value(
        False,
        isflag=True,
        help='Power off or reset hard when the guest does not respond.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        op = str(args.op or '').strip().lower()
        if op not in POWER_OPS:
            raise ESXiVMError(f'power operation must be one of: {", ".join(POWER_OPS)}')
        cfg = _load_cfg(args.config)
        desired = select_vms(cfg, _split_names(args.vms))
        if op != 'on':
            _confirm(
                yes=bool(args.yes),
                purpose=f'Power {op} {", ".join(vm.name for vm in desired)}',
            )
        factory = _probe_factory(cfg)
        hosts = cfg.hosts_by_name()
        rc = 0
        for vm in desired:
            label = f'{vm.host}/{vm.name}'
            try:
                status = factory(hosts[vm.host]).power(vm.name, op, force=bool(args.force))
            except ESXiVMError as ex:
                log.warning('Power {} of {} failed: {}', op, label, ex)
                print(status_line(False, label, str(ex)))
                rc = 1
                continue
            print(status_line(status == ActionStatus.APPLIED, label, f'power {op}'))
        return rc


class CacheClearCLI(_BaseCommand):
    """Forget the cached fleet map."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = cache_path_for(_cfg_path(args.config))
        StateCache(path).invalidate()
        print(status_line(True, 'Cache cleared', str(path)))
        return 0


class CacheModalCLI(scfg.ModalCLI):
    """Fleet map cache maintenance."""

    clear = CacheClearCLI


class ESXiVMModalCLI(scfg.ModalCLI):
    """Declarative virtual machine management for a fleet of ESXi hypervisors."""

    ls = ListCLI
    status = StatusCLI
    plan = PlanCLI
    apply = ApplyCLI
    create = CreateCLI
    destroy = DestroyCLI
    power = PowerCLI
    cache = CacheModalCLI


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        path = _cfg_path(config_value)
        if path.exists():
            verbosity = _load_cfg(str(path)).settings.verbosity
    except ESXiVMError:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = ESXiVMModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled esxivm error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


def _leading_positionals(rest: list[str]) -> tuple[list[str], list[str]]:
    words: list[str] = []
    idx = 0
    while idx < len(rest) and not rest[idx].startswith('-'):
        words.append(rest[idx])
        idx += 1
    return words, rest[idx:]


def _normalize_argv(argv: list[str]) -> list[str]:
    """Turn positional VM names and targets into scriptconfig options."""
    if not argv:
        return argv
    cmd, rest = argv[0], list(argv[1:])
    if cmd == 'list':
        cmd = 'ls'
    if cmd in ('plan', 'apply', 'create'):
        words, tail = _leading_positionals(rest)
        if words:
            return [cmd, '--vms', ','.join(words), *tail]
    elif cmd == 'destroy':
        words, tail = _leading_positionals(rest)
        if words:
            return [cmd, '--targets', ','.join(words), *tail]
    elif cmd == 'power':
        words, tail = _leading_positionals(rest)
        if words:
            out = [cmd, '--op', words[0]]
            if words[1:]:
                out += ['--vms', ','.join(words[1:])]
            return [*out, *tail]
    return [cmd, *rest]


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
