"""Reading and writing ESXi ``.vmx`` files and mapping them to VM attributes."""

from __future__ import annotations

import re

from .model import DesiredVM

VMX_KEYS = {
    'memory_mb': 'memsize',
    'vcpus': 'numvcpus',
    'guest_type': 'guestos',
    'network_name': 'ethernet0.networkname',
    'ipv4_address': 'guestinfo.ipv4_address',
    'ipv4_netmask': 'guestinfo.ipv4_netmask',
    'ipv4_gateway': 'guestinfo.ipv4_gateway',
    'dns_servers': 'guestinfo.dns_servers',
    'iso': 'ide0:0.filename',
}
DISK_KEY = 'scsi0:0.filename'

_LINE_RE = re.compile(r'^\s*([^=#\s]+)\s*=\s*"(.*)"\s*$')
_EXTENT_RE = re.compile(r'^\s*RW\s+(\d+)\s+\S+\s+"[^"]*"')

SECTOR_BYTES = 512


def parse_vmx(text: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for line in text.splitlines():
        m = _LINE_RE.match(line)
        if m:
            params[m.group(1).lower()] = m.group(2)
    return params


def render_vmx(params: dict[str, str]) -> str:
    lines = [f'{k} = "{v}"' for k, v in sorted(params.items())]
    return '\n'.join(lines) + '\n'


def attrs_from_vmx(params: dict[str, str]) -> dict[str, str]:
    return {attr: params.get(key, '') for attr, key in VMX_KEYS.items()}


def disk_gb_from_descriptor(text: str) -> str:
    """Total size of a ``.vmdk`` descriptor's extents in whole GiB."""
    sectors = 0
    for line in text.splitlines():
        m = _EXTENT_RE.match(line)
        if m:
            sectors += int(m.group(1))
    if not sectors:
        return ''
    return str((sectors * SECTOR_BYTES) // (1024**3))


def set_vmx_attr(params: dict[str, str], attr: str, value: str) -> None:
    key = VMX_KEYS[attr]
    params[key] = value
    if attr == 'iso':
        connected = 'TRUE' if value else 'FALSE'
        params['ide0:0.present'] = 'TRUE'
        params['ide0:0.devicetype'] = 'cdrom-image'
        params['ide0:0.startconnected'] = connected


def build_vmx(vm: DesiredVM, iso_path: str, disk_file: str = '') -> dict[str, str]:
    """Render the full parameter set for a new VM."""
    v = vm.creation_value
    params = {
        '.encoding': 'UTF-8',
        'bios.bootorder': 'CDROM',
        'checkpoint.vmstate': '',
        'cleanshutdown': 'TRUE',
        'config.version': '8',
        'displayname': vm.name,
        'ethernet0.addresstype': 'generated',
        'ethernet0.pcislotnumber': '33',
        'ethernet0.present': 'TRUE',
        'ethernet0.virtualdev': 'vmxnet3',
        'extendedconfigfile': f'{vm.name}.vmxf',
        'floppy0.present': 'FALSE',
        'guestinfo.hostname': vm.name,
        'hpet0.present': 'TRUE',
        'mem.hotadd': 'TRUE',
        'msg.autoanswer': 'true',
        'nvram': f'{vm.name}.nvram',
        'pcibridge0.present': 'TRUE',
        'powertype.poweroff': 'default',
        'powertype.poweron': 'default',
        'powertype.reset': 'default',
        'powertype.suspend': 'soft',
        'sched.cpu.units': 'mhz',
        'sched.mem.pin': 'TRUE',
        'scsi0.present': 'FALSE',
        'svga.present': 'TRUE',
        'tools.synctime': 'FALSE',
        'tools.upgrade.policy': 'manual',
        'vcpu.hotadd': 'TRUE',
        'virtualhw.productcompatibility': 'hosted',
        'virtualhw.version': '11',
        'vmci0.present': 'TRUE',
    }
    for bridge in (4, 5, 6, 7):
        params[f'pcibridge{bridge}.functions'] = '8'
        params[f'pcibridge{bridge}.present'] = 'TRUE'
        params[f'pcibridge{bridge}.virtualdev'] = 'pcieRootPort'
    for attr in VMX_KEYS:
        if attr == 'iso':
            continue
        params[VMX_KEYS[attr]] = v(attr)
    set_vmx_attr(params, 'iso', iso_path)
    if disk_file:
        params['scsi0.present'] = 'TRUE'
        params['scsi0.virtualdev'] = 'pvscsi'
        params['scsi0:0.present'] = 'TRUE'
        params[DISK_KEY] = disk_file
        params['bios.bootorder'] = 'CDROM,hdd'
    return params
