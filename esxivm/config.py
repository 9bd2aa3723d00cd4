"""Desired-state configuration: TOML loading, override resolution and validation."""

from __future__ import annotations

import ipaddress
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .errors import ConfigError, PreconditionError
from .model import CLEARABLE_ATTRS, VM_ATTRS, Attr, DesiredVM, HypervisorRecord

log = logger

DEFAULT_CONFIG_NAME = 'esxivm.toml'
CONFIG_ENV = 'ESXIVM_CONFIG'
CACHE_BYPASS = 'bypass'

CONNECTION_KEYS = (
    'hostname',
    'ssh_username',
    'ssh_port',
    'ssh_password',
    'ssh_password_env',
)
# The hostname gets its own "required" error later on.
EMPTY_CONNECTION_KEYS = ('hostname', 'ssh_password', 'ssh_password_env')
CONNECTION_DEFAULTS = {
    'hostname': '',
    'ssh_username': 'root',
    'ssh_port': 22,
    'ssh_password': '',
    'ssh_password_env': '',
}
# Used only to render a new VM; never participates in diffing.
BUILTIN_VM_DEFAULTS = {
    'memory_mb': '1024',
    'vcpus': '1',
    'guest_type': 'debian8-64',
    'network_name': 'VM Network',
    'ipv4_netmask': '255.255.255.0',
    'datastore': 'datastore1',
    'autostart': 'false',
}

_NAME_RE = re.compile(r'^[A-Za-z0-9_.\-]+$')
_NETMASK_OCTETS = {'255', '254', '252', '248', '240', '224', '192', '128', '0'}


@dataclass
class Settings:
    cache_ttl: float | str = 300.0
    max_workers: int = 4
    timeout: float = 30.0
    retries: int = 1
    retry_backoff: float = 2.0
    ignore_unreachable: bool = True
    verbosity: int = 1


@dataclass
class FleetConfig:
    path: Path
    settings: Settings = field(default_factory=Settings)
    hypervisors: list[HypervisorRecord] = field(default_factory=list)
    vms: list[DesiredVM] = field(default_factory=list)

    def hypervisor(self, name: str) -> HypervisorRecord | None:
        for hv in self.hypervisors:
            if hv.name == name:
                return hv
        return None

    def vm(self, name: str) -> DesiredVM | None:
        for vm in self.vms:
            if vm.name == name:
                return vm
        return None

    def hosts_by_name(self) -> dict[str, HypervisorRecord]:
        return {hv.name: hv for hv in self.hypervisors}


def config_path(p: str | None = None) -> Path:
    raw = p or os.environ.get(CONFIG_ENV) or DEFAULT_CONFIG_NAME
    return Path(raw).expanduser().resolve()


def _error(path: Path, where: str, message: str) -> ConfigError:
    return ConfigError(f'Configuration file ({path}) at {where}: {message}')


def check_param_value(key: str, value: str) -> str:
    """Return an error description for an invalid value, or an empty string."""
    if value == '':
        if key in CLEARABLE_ATTRS or key in EMPTY_CONNECTION_KEYS:
            return ''
        return 'it must be not empty'
    if key == 'hostname':
        if not _NAME_RE.match(value):
            return 'it must consist of characters [A-Za-z0-9_.-]'
    elif key == 'ssh_port':
        if not value.isdigit() or not 0 <= int(value) <= 65535:
            return 'it must be a number from 0 to 65535'
    elif key in ('ipv4_address', 'ipv4_gateway'):
        try:
            ipaddress.IPv4Address(value)
        except ValueError:
            return 'it must be a valid IPv4 address (in x.x.x.x format)'
    elif key == 'ipv4_netmask':
        octets = value.split('.')
        if len(octets) != 4 or any(o not in _NETMASK_OCTETS for o in octets):
            return 'it must be a valid IPv4 netmask (in x.x.x.x format)'
        seen_partial = False
        for o in octets:
            if seen_partial and o != '0':
                return 'it must be a valid IPv4 netmask (in x.x.x.x format)'
            if o != '255':
                seen_partial = True
    elif key == 'dns_servers':
        for item in value.split(','):
            try:
                ipaddress.IPv4Address(item.strip())
            except ValueError:
                return 'it must be a list of IPv4 addresses'
    elif key == 'memory_mb':
        if not value.isdigit() or not 1024 <= int(value) <= 32768:
            return 'it must be a number from 1024 to 32768'
    elif key == 'vcpus':
        if not value.isdigit() or not 1 <= int(value) <= 8:
            return 'it must be a number from 1 to 8'
    elif key == 'disk_gb':
        if not value.isdigit() or int(value) < 1:
            return 'it must be a positive number of GiB'
    elif key == 'autostart':
        if value not in ('true', 'false'):
            return 'it must be a boolean'
    elif key in ('datastore', 'network_name', 'guest_type'):
        if '"' in value:
            return 'it must not contain double quotes'
    return ''


def _read_layer(
    path: Path, where: str, body: object, allowed: tuple[str, ...]
) -> dict[str, Attr]:
    if not isinstance(body, dict):
        raise _error(path, where, 'expected a table of key/value pairs')
    layer: dict[str, Attr] = {}
    for key, raw in body.items():
        if key not in allowed:
            raise _error(
                path,
                where,
                f"unknown parameter name '{key}' "
                f'(known: {", ".join(sorted(allowed))})',
            )
        if isinstance(raw, dict):
            raise _error(path, where, f"parameter '{key}' must be a scalar")
        attr = Attr.of(raw)
        problem = check_param_value(key, attr.value)
        if problem:
            raise _error(
                path, where, f"wrong value of '{key}' parameter: {problem}"
            )
        layer[key] = attr
    return layer


def _resolve(key: str, *layers: dict[str, Attr]) -> Attr:
    """Highest-precedence layer that mentions the key wins, even when empty."""
    for layer in layers:
        if key in layer:
            return layer[key]
    return Attr.absent()


def _check_gateway(path: Path, vm_name: str, attrs: dict[str, Attr]) -> None:
    addr = attrs.get('ipv4_address', Attr.absent())
    mask = attrs.get('ipv4_netmask', Attr.absent())
    gw = attrs.get('ipv4_gateway', Attr.absent())
    if not (addr.is_set and gw.is_set):
        return
    netmask = mask.value if mask.is_set else BUILTIN_VM_DEFAULTS['ipv4_netmask']
    net = ipaddress.IPv4Network(f'{addr.value}/{netmask}', strict=False)
    if ipaddress.IPv4Address(gw.value) not in net:
        raise _error(
            path,
            f'[vms.{vm_name}]',
            f"the gateway '{gw.value}' does not match the address "
            f"'{addr.value}' and netmask '{netmask}'",
        )


def _parse_settings(path: Path, body: object) -> Settings:
    settings = Settings()
    if body is None:
        return settings
    if not isinstance(body, dict):
        raise _error(path, '[settings]', 'expected a table')
    for key, raw in body.items():
        if not hasattr(settings, key):
            raise _error(path, '[settings]', f"unknown setting '{key}'")
        try:
            if key == 'cache_ttl':
                settings.cache_ttl = parse_validity_window(raw)
            elif key == 'ignore_unreachable':
                if not isinstance(raw, bool):
                    raise ValueError(f'expected true or false, got {raw!r}')
                settings.ignore_unreachable = raw
            elif key in ('max_workers', 'retries', 'verbosity'):
                setattr(settings, key, int(raw))
            else:
                setattr(settings, key, float(raw))
        except (TypeError, ValueError) as ex:
            raise _error(path, '[settings]', f"bad value for '{key}': {ex}")
    if settings.max_workers < 1:
        raise _error(path, '[settings]', 'max_workers must be at least 1')
    return settings


def parse_validity_window(raw: object) -> float | str:
    """Parse a cache validity window in seconds or the bypass sentinel."""
    if isinstance(raw, str) and raw.strip().lower() == CACHE_BYPASS:
        return CACHE_BYPASS
    value = float(raw)  # type: ignore[arg-type]
    if value < 0:
        raise ValueError('validity window must not be negative')
    return value


def parse_config(raw: dict, path: Path) -> FleetConfig:
    cfg = FleetConfig(path=path)
    unknown = set(raw) - {'settings', 'defaults', 'hypervisors', 'vms'}
    if unknown:
        raise _error(
            path,
            'top level',
            f'unknown sections: {", ".join(sorted(unknown))}; '
            'only [settings], [defaults], [hypervisors.*] and [vms.*] are allowed',
        )
    cfg.settings = _parse_settings(path, raw.get('settings'))
    defaults = _read_layer(
        path, '[defaults]', raw.get('defaults', {}), CONNECTION_KEYS + VM_ATTRS
    )

    hv_layers: dict[str, dict[str, Attr]] = {}
    hv_tables = raw.get('hypervisors', {})
    if not isinstance(hv_tables, dict):
        raise _error(path, '[hypervisors]', 'expected named tables')
    for name, body in hv_tables.items():
        if not _NAME_RE.match(name):
            raise _error(
                path, f'[hypervisors.{name}]', 'name must consist of [A-Za-z0-9_.-]'
            )
        layer = _read_layer(
            path, f'[hypervisors.{name}]', body, CONNECTION_KEYS + VM_ATTRS
        )
        hv_layers[name] = layer
        conn: dict[str, str] = {}
        for key in CONNECTION_KEYS:
            attr = _resolve(key, layer, defaults)
            conn[key] = (
                attr.value if attr.is_set else str(CONNECTION_DEFAULTS[key])
            )
        if not conn['hostname']:
            raise _error(
                path,
                f'[hypervisors.{name}]',
                "the required 'hostname' parameter is empty",
            )
        cfg.hypervisors.append(
            HypervisorRecord(
                name=name,
                hostname=conn['hostname'],
                ssh_username=conn['ssh_username'],
                ssh_port=int(conn['ssh_port']),
                ssh_password=conn['ssh_password'],
                ssh_password_env=conn['ssh_password_env'],
                overrides={k: v for k, v in layer.items() if k in VM_ATTRS},
            )
        )

    vm_tables = raw.get('vms', {})
    if not isinstance(vm_tables, dict):
        raise _error(path, '[vms]', 'expected named tables')
    for name, body in vm_tables.items():
        where = f'[vms.{name}]'
        if not _NAME_RE.match(name):
            raise _error(path, where, 'name must consist of [A-Za-z0-9_.-]')
        if not isinstance(body, dict):
            raise _error(path, where, 'expected a table of key/value pairs')
        body = dict(body)
        at = str(body.pop('at', '')).strip()
        if not at:
            raise _error(path, where, "the 'at' parameter is missing")
        if at not in hv_layers:
            raise _error(
                path,
                where,
                f"the hypervisor '{at}' named in 'at' is not declared "
                'under [hypervisors]',
            )
        layer = _read_layer(path, where, body, VM_ATTRS)
        attrs: dict[str, Attr] = {}
        for key in VM_ATTRS:
            attr = _resolve(key, layer, hv_layers[at], defaults)
            if not attr.is_absent:
                attrs[key] = attr
        _check_gateway(path, name, attrs)
        cfg.vms.append(
            DesiredVM(
                name=name,
                host=at,
                attrs=attrs,
                creation_defaults=dict(BUILTIN_VM_DEFAULTS),
            )
        )
    log.debug(
        'Parsed config {}: {} hypervisors, {} vms',
        path,
        len(cfg.hypervisors),
        len(cfg.vms),
    )
    return cfg


def load(path: Path) -> FleetConfig:
    if not path.exists() or path.stat().st_size == 0:
        raise ConfigError(
            f"Can't load a configuration file ({path}). "
            'Check that it exists and is not empty.'
        )
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except tomllib.TOMLDecodeError as ex:
        raise ConfigError(f'Configuration file ({path}) is not valid TOML: {ex}')
    return parse_config(raw, path)


def select_vms(cfg: FleetConfig, names: list[str]) -> list[DesiredVM]:
    """Resolve VM names given on the command line; no names selects all VMs."""
    if not cfg.vms and not names:
        raise PreconditionError(
            f'The VM list is empty in configuration file ({cfg.path}).'
        )
    if not names:
        return list(cfg.vms)
    chosen: list[DesiredVM] = []
    for name in names:
        vm = cfg.vm(name)
        if vm is None:
            raise PreconditionError(
                f"The specified virtual machine '{name}' does not exist in "
                f'the configuration file ({cfg.path}). '
                'Available names can be viewed with `esxivm ls`.'
            )
        chosen.append(vm)
    return chosen


def parse_target(raw: str) -> tuple[str, str]:
    """Split an explicit ``hypervisor/vm`` target."""
    host, sep, vm = raw.strip().partition('/')
    if not sep or not host or not vm:
        raise PreconditionError(
            f"Target '{raw}' must be written as <hypervisor>/<vm>."
        )
    return host, vm
