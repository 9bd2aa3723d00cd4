from __future__ import annotations

import pytest
from conftest import desired_vm

from esxivm.errors import (
    ProtocolError,
    SoftFailureError,
    ToolMissingError,
    UnreachableError,
)
from esxivm.fleet import PROTOCOL_ERROR, build_fleet_map
from esxivm.model import ActionStatus, HypervisorRecord, Reachability
from esxivm.probe import (
    ISO_INVENTORY_CMD,
    ESXiProbe,
    parse_autostart,
    parse_getallvms,
    parse_md5_inventory,
    parse_power_state,
)
from esxivm.transport import NETWORK_FAILURE, REMOTE_ERROR, TransportError

GETALLVMS = '''\
Vmid   Name   File                      Guest OS          Version   Annotation
1      web    [datastore1] web/web.vmx  debian8_64Guest   vmx-11
2      db     [datastore2] db/db.vmx    debian8_64Guest   vmx-11    nightly
build box
'''

AUTOSTART = '''\
(vim.host.AutoStartManager.AutoPowerInfo) [
   (vim.host.AutoStartManager.AutoPowerInfo) {
      key = 'vim.VirtualMachine:1',
      startOrder = 1,
      startDelay = 120,
      waitForHeartbeat = "systemDefault",
      startAction = "powerOn",
   },
   (vim.host.AutoStartManager.AutoPowerInfo) {
      key = 'vim.VirtualMachine:2',
      startOrder = -1,
      startAction = "None",
   }
]
'''

ISO = '/vmfs/volumes/datastore1/.iso/debian.iso'
MD5 = f'0123456789abcdef0123456789abcdef  {ISO}\n'

WEB_VMX = f'''\
memsize = "2048"
numvcpus = "2"
guestos = "debian8-64"
ethernet0.networkname = "VM Network"
ide0:0.filename = "{ISO}"
scsi0:0.filename = "web.vmdk"
'''

DB_VMX = '''\
memsize = "4096"
numvcpus = "4"
'''

DESCRIPTOR = 'RW 20971520 VMFS "web-flat.vmdk"\n'


class ScriptedTransport:
    """Answers commands by prefix; list answers are consumed in order."""

    def __init__(self, responses: dict[str, object]):
        self.responses = responses
        self.commands: list[str] = []
        self.inputs: dict[str, str] = {}
        self.copies: list[tuple[str, str]] = []

    def exec(self, host, command, *, timeout, input_text=None):
        self.commands.append(command)
        if input_text is not None:
            self.inputs[command] = input_text
        for prefix, answer in self.responses.items():
            if command.startswith(prefix):
                if isinstance(answer, list):
                    answer = answer.pop(0) if len(answer) > 1 else answer[0]
                if isinstance(answer, Exception):
                    raise answer
                return answer
        return ''

    def copy(self, host, local_path, remote_path, *, timeout):
        self.copies.append((local_path, remote_path))


def _remote_fail(stderr: str = '') -> TransportError:
    return TransportError(REMOTE_ERROR, 'failed', code=1, stderr=stderr)


def _probe(responses: dict[str, object]) -> tuple[ESXiProbe, ScriptedTransport]:
    transport = ScriptedTransport(responses)
    host = HypervisorRecord(name='esx1', hostname='esx1.lan')
    probe = ESXiProbe(host, transport, timeout=5, shutdown_wait=0, poll_interval=0)
    return probe, transport


def _inventory_responses() -> dict[str, object]:
    return {
        'vim-cmd vmsvc/getallvms': GETALLVMS,
        'vim-cmd hostsvc/autostartmanager/get_autostartseq': AUTOSTART,
        ISO_INVENTORY_CMD: MD5,
        'cat /vmfs/volumes/datastore1/web/web.vmx': WEB_VMX,
        'cat /vmfs/volumes/datastore1/web/web.vmdk': DESCRIPTOR,
        'cat /vmfs/volumes/datastore2/db/db.vmx': DB_VMX,
        'vim-cmd vmsvc/power.getstate 1': 'Retrieved runtime info\nPowered on\n',
        'vim-cmd vmsvc/power.getstate 2': 'Retrieved runtime info\nPowered off\n',
    }


def test_parsers() -> None:
    assert parse_getallvms('esx1', GETALLVMS) == [
        ('1', 'web', '/vmfs/volumes/datastore1/web/web.vmx'),
        ('2', 'db', '/vmfs/volumes/datastore2/db/db.vmx'),
    ]
    assert parse_getallvms('esx1', '') == []
    with pytest.raises(ProtocolError):
        parse_getallvms('esx1', 'Permission denied\n')
    assert parse_autostart(AUTOSTART) == {'1'}
    assert parse_power_state('esx1', 'Retrieved runtime info\nSuspended') == 'suspended'
    with pytest.raises(ProtocolError):
        parse_power_state('esx1', 'what')
    assets = parse_md5_inventory(MD5 + 'md5sum: cannot read\n')
    assert [(a.path, a.checksum) for a in assets] == [
        (ISO, '0123456789abcdef0123456789abcdef')
    ]


def test_inspect_builds_inventory() -> None:
    probe, transport = _probe(_inventory_responses())
    inv = probe.inspect()
    assert probe.host.status == Reachability.REACHABLE
    vms = {vm.name: vm for vm in inv.vms}
    web, db = vms['web'], vms['db']
    assert web.vmid == '1'
    assert web.datastore == 'datastore1'
    assert web.power_state == 'on'
    assert web.attr('memory_mb') == '2048'
    assert web.attr('autostart') == 'true'
    assert web.attr('disk_gb') == '10'
    assert web.asset_checksums == {ISO: '0123456789abcdef0123456789abcdef'}
    assert db.powered_off
    assert db.datastore == 'datastore2'
    assert db.attr('autostart') == 'false'
    assert db.attr('disk_gb') == ''
    assert db.attr('iso') == ''
    assert [a.path for a in inv.assets] == [ISO]
    # inspecting never mutates the host
    assert not any(
        c.startswith(('rm ', 'mkdir', 'vim-cmd vmsvc/destroy')) for c in transport.commands
    )


def test_inspect_unreachable_host() -> None:
    probe, _ = _probe({'true': TransportError(NETWORK_FAILURE, 'no route')})
    with pytest.raises(UnreachableError):
        probe.inspect()
    assert probe.host.status == Reachability.UNREACHABLE


def test_inspect_missing_tools() -> None:
    probe, _ = _probe({'type -f': _remote_fail('type: vim-cmd: not found')})
    with pytest.raises(ToolMissingError, match='vim-cmd: not found'):
        probe.inspect()


def test_inspect_bad_listing_is_protocol_error() -> None:
    responses = _inventory_responses()
    responses['vim-cmd vmsvc/getallvms'] = 'garbage\n'
    probe, _ = _probe(responses)
    with pytest.raises(ProtocolError):
        probe.inspect()


def test_destroy_absent_vm() -> None:
    probe, transport = _probe({'vim-cmd vmsvc/getallvms': GETALLVMS})
    assert probe.destroy('ghost') == ActionStatus.ALREADY_ABSENT
    assert not any('destroy' in c for c in transport.commands)


def test_destroy_after_graceful_shutdown() -> None:
    probe, transport = _probe(
        {
            'vim-cmd vmsvc/getallvms': GETALLVMS,
            'vim-cmd vmsvc/power.getstate 1': ['Powered on', 'Powered off'],
        }
    )
    assert probe.destroy('web') == ActionStatus.APPLIED
    assert 'vim-cmd vmsvc/power.shutdown 1' in transport.commands
    assert 'vim-cmd vmsvc/power.off 1' not in transport.commands
    assert transport.commands[-1] == 'vim-cmd vmsvc/destroy 1'


def test_destroy_needs_force_when_guest_ignores_shutdown() -> None:
    responses = {
        'vim-cmd vmsvc/getallvms': GETALLVMS,
        'vim-cmd vmsvc/power.getstate 1': 'Powered on',
        'vim-cmd vmsvc/power.shutdown': _remote_fail('tools not running'),
    }
    probe, transport = _probe(responses)
    with pytest.raises(SoftFailureError, match='--force'):
        probe.destroy('web')
    assert 'vim-cmd vmsvc/destroy 1' not in transport.commands

    probe, transport = _probe(dict(responses))
    assert probe.destroy('web', force=True) == ActionStatus.APPLIED
    assert 'vim-cmd vmsvc/power.off 1' in transport.commands


def test_set_attribute_rewrites_vmx_and_reloads() -> None:
    probe, transport = _probe(
        {
            'vim-cmd vmsvc/getallvms': GETALLVMS,
            'cat /vmfs/volumes/datastore1/web/web.vmx': WEB_VMX,
        }
    )
    assert probe.set_attribute('web', 'memory_mb', '4096') == ActionStatus.APPLIED
    written = transport.inputs['cat > /vmfs/volumes/datastore1/web/web.vmx']
    assert 'memsize = "4096"' in written
    assert 'numvcpus = "2"' in written
    assert transport.commands[-1] == 'vim-cmd vmsvc/reload 1'


def test_set_autostart_uses_autostart_manager() -> None:
    probe, transport = _probe({'vim-cmd vmsvc/getallvms': GETALLVMS})
    probe.set_attribute('db', 'autostart', 'true')
    assert any(
        c.startswith('vim-cmd hostsvc/autostartmanager/update_autostartentry 2 powerOn')
        for c in transport.commands
    )


def test_grow_disk_refuses_to_shrink() -> None:
    responses = {
        'vim-cmd vmsvc/getallvms': GETALLVMS,
        'cat /vmfs/volumes/datastore1/web/web.vmx': WEB_VMX,
        'cat /vmfs/volumes/datastore1/web/web.vmdk': DESCRIPTOR,
    }
    probe, transport = _probe(responses)
    probe.set_attribute('web', 'disk_gb', '20')
    assert (
        'vmkfstools -X 20G /vmfs/volumes/datastore1/web/web.vmdk' in transport.commands
    )
    probe, _ = _probe(dict(responses))
    with pytest.raises(Exception, match='shrink'):
        probe.set_attribute('web', 'disk_gb', '5')


def test_create_writes_vmx_and_registers() -> None:
    probe, transport = _probe(
        {
            'vim-cmd vmsvc/getallvms': GETALLVMS,
            'vim-cmd solo/registervm': '7\n',
        }
    )
    vm = desired_vm('app', 'esx1', memory_mb=2048, disk_gb=8, autostart=True)
    iso = '/vmfs/volumes/datastore1/.iso/app.iso'
    assert probe.create(vm, iso) == ActionStatus.APPLIED
    assert 'mkdir /vmfs/volumes/datastore1/app' in transport.commands
    assert any(c.startswith('vmkfstools -c 8G') for c in transport.commands)
    vmx = transport.inputs['cat > /vmfs/volumes/datastore1/app/app.vmx']
    assert 'memsize = "2048"' in vmx
    assert f'ide0:0.filename = "{iso}"' in vmx
    assert any('update_autostartentry 7 powerOn' in c for c in transport.commands)
    assert transport.commands[-1].startswith('vim-cmd vmsvc/power.on 7')


def test_create_refuses_existing_name() -> None:
    probe, _ = _probe({'vim-cmd vmsvc/getallvms': GETALLVMS})
    with pytest.raises(Exception, match='already exists'):
        probe.create(desired_vm('web', 'esx1'), '')


def test_remove_and_upload_assets() -> None:
    probe, transport = _probe({'test -f': _remote_fail()})
    assert probe.remove_asset(ISO) == ActionStatus.ALREADY_ABSENT
    probe, transport = _probe({})
    assert probe.remove_asset(ISO) == ActionStatus.APPLIED
    assert transport.commands[-1] == f'rm -f {ISO}'
    assert probe.upload_asset('/tmp/debian.iso', ISO) == ActionStatus.APPLIED
    assert transport.copies == [('/tmp/debian.iso', ISO)]
    assert 'mkdir -p /vmfs/volumes/datastore1/.iso' in transport.commands


def test_remote_error_on_connect_is_a_protocol_error() -> None:
    sshpass_failed = TransportError(
        REMOTE_ERROR, 'sshpass general runtime error', code=3
    )
    probe, _ = _probe({'true': sshpass_failed})
    with pytest.raises(ProtocolError, match='cannot run commands'):
        probe.inspect()


def test_fleet_build_survives_remote_error_on_one_host() -> None:
    answers = {
        'esx1': {'true': TransportError(REMOTE_ERROR, 'runtime error', code=3)},
        'esx2': _inventory_responses(),
    }
    records = [
        HypervisorRecord(name='esx1', hostname='esx1.lan'),
        HypervisorRecord(name='esx2', hostname='esx2.lan'),
    ]

    def factory(host: HypervisorRecord) -> ESXiProbe:
        return ESXiProbe(host, ScriptedTransport(answers[host.name]), timeout=5)

    fleet, errors = build_fleet_map(records, factory, ignore_unreachable=True)
    assert sorted(fleet.vms) == ['db', 'web']
    assert fleet.partial
    assert [(e.host, e.kind) for e in errors] == [('esx1', PROTOCOL_ERROR)]
