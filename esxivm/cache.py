"""Fleet map cache: one JSON record per configuration file, last writer wins."""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any

import ubelt as ub
from loguru import logger

from .config import CACHE_BYPASS
from .model import (
    ActualVM,
    AssetRecord,
    CacheEntry,
    Collision,
    FleetMap,
    Reachability,
)

log = logger

SCHEMA_VERSION = 1


def _appdir(appname: str, kind: str) -> Path:
    p = ub.Path.appdir(appname, type=kind).ensuredir()
    return Path(p)


def cache_path_for(config_path: Path) -> Path:
    key = ub.hash_data(str(Path(config_path).resolve()), hasher='sha1')[:16]
    return _appdir('esxivm', 'cache') / f'fleet-{key}.json'


def fleet_to_dict(fleet: FleetMap) -> dict[str, Any]:
    d = asdict(fleet)
    d['host_status'] = {k: Reachability(v).value for k, v in fleet.host_status.items()}
    return d


def _vm_from_dict(raw: dict) -> ActualVM:
    return ActualVM(
        name=str(raw['name']),
        host=str(raw['host']),
        vmid=str(raw.get('vmid', '')),
        vmx_path=str(raw.get('vmx_path', '')),
        datastore=str(raw.get('datastore', '')),
        power_state=str(raw.get('power_state', 'unknown')),
        attrs={str(k): str(v) for k, v in raw.get('attrs', {}).items()},
        asset_checksums={
            str(k): str(v) for k, v in raw.get('asset_checksums', {}).items()
        },
    )


def fleet_from_dict(raw: dict) -> FleetMap:
    return FleetMap(
        vms={name: _vm_from_dict(vm) for name, vm in raw.get('vms', {}).items()},
        collisions={
            name: Collision(
                name=str(col['name']),
                hosts=[str(h) for h in col.get('hosts', [])],
                instances=[_vm_from_dict(vm) for vm in col.get('instances', [])],
            )
            for name, col in raw.get('collisions', {}).items()
        },
        assets={
            host: [
                AssetRecord(path=str(a['path']), checksum=str(a['checksum']))
                for a in items
            ]
            for host, items in raw.get('assets', {}).items()
        },
        host_status={
            host: Reachability(status)
            for host, status in raw.get('host_status', {}).items()
        },
        probed_hosts=[str(h) for h in raw.get('probed_hosts', [])],
        partial=bool(raw.get('partial', False)),
        captured_at=float(raw.get('captured_at', 0.0)),
    )


class StateCache:
    """Persists the most recent fleet map with a validity window.

    A corrupt or unreadable record is logged and treated as a miss. Cached
    content only saves a probe pass; it is never trusted more than a fresh map.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def read_entry(self, max_age: float) -> CacheEntry | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding='utf-8'))
            if int(raw.get('schema_version', 0)) != SCHEMA_VERSION:
                log.info('Ignoring cache {} with old schema', self.path)
                return None
            fleet = fleet_from_dict(raw['fleet'])
            captured_at = float(raw['captured_at'])
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as ex:
            log.warning('Ignoring unreadable cache {}: {}', self.path, ex)
            return None
        return CacheEntry(fleet=fleet, captured_at=captured_at, max_age=max_age)

    def load(self, max_age: float | str) -> tuple[FleetMap | None, bool]:
        if max_age == CACHE_BYPASS:
            log.debug('Cache bypass requested; forcing a fresh probe')
            return None, False
        entry = self.read_entry(float(max_age))
        if entry is None:
            return None, False
        if not entry.is_fresh(time.time()):
            log.debug(
                'Cache {} expired (age {:.0f}s > {:.0f}s)',
                self.path,
                time.time() - entry.captured_at,
                entry.max_age,
            )
            return None, False
        log.debug('Using cached fleet map from {}', self.path)
        return entry.fleet, True

    def store(self, fleet: FleetMap) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            'schema_version': SCHEMA_VERSION,
            'captured_at': fleet.captured_at or time.time(),
            'fleet': fleet_to_dict(fleet),
        }
        fd, tmp = tempfile.mkstemp(
            prefix=self.path.name + '.', suffix='.tmp', dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as file:
                json.dump(record, file, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        log.debug('Stored fleet map cache {}', self.path)
        return self.path

    def invalidate(self) -> None:
        self.path.unlink(missing_ok=True)
