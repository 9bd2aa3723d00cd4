from __future__ import annotations

from esxivm.model import (
    Action,
    ActionKind,
    ActionPlan,
    ActionResult,
    ActionStatus,
    ActualVM,
    AssetRecord,
    Attr,
    CacheEntry,
    FleetMap,
    Reachability,
)


def test_attr_three_states() -> None:
    assert Attr.absent().is_absent
    assert Attr.of('').is_empty
    assert Attr.of([]).is_empty
    assert Attr.of(True) == Attr.of('true')
    assert Attr.of(['8.8.8.8', ' 1.1.1.1 ']).value == '8.8.8.8,1.1.1.1'
    assert Attr.of(2048).is_set
    assert str(Attr.absent()) == '(inherit)'
    assert str(Attr.empty()) == '(empty)'


def test_fleet_map_asset_helpers() -> None:
    iso = '/vmfs/volumes/datastore1/.iso/debian.iso'
    fleet = FleetMap(
        vms={
            'a': ActualVM('a', 'esx1', attrs={'iso': iso}),
            'b': ActualVM('b', 'esx1', attrs={'iso': iso}),
            'c': ActualVM('c', 'esx2', attrs={'iso': iso}),
        },
        assets={'esx1': [AssetRecord(iso, 'abc')]},
        host_status={
            'esx1': Reachability.REACHABLE,
            'esx2': Reachability.UNREACHABLE,
        },
    )
    assert fleet.asset_users('esx1', iso) == ['a', 'b']
    assert fleet.asset_checksum('esx1', iso) == 'abc'
    assert fleet.asset_checksum('esx2', iso) == ''
    assert fleet.asset_by_checksum('esx1', 'abc').path == iso
    assert fleet.asset_by_checksum('esx1', 'abc', prefix='/vmfs/volumes/ds2/') is None
    assert fleet.asset_by_checksum('esx1', '') is None
    assert fleet.is_reachable('esx1')
    assert not fleet.is_reachable('esx2')
    assert not fleet.is_reachable('esx3')


def test_cache_entry_freshness() -> None:
    entry = CacheEntry(fleet=FleetMap(), captured_at=100.0, max_age=10.0)
    assert entry.is_fresh(105.0)
    assert entry.is_fresh(110.0)
    assert not entry.is_fresh(110.5)


def test_action_plan_grouping_and_results() -> None:
    plan = ActionPlan(
        [
            Action(ActionKind.DESTROY, 'vmC', 'esx2'),
            Action(ActionKind.CREATE, 'vmB', 'esx1'),
            Action(ActionKind.REMOVE_ASSET, 'vmC', 'esx2', asset='/x.iso'),
        ]
    )
    assert len(plan) == 3
    assert plan.vm_names() == ['vmC', 'vmB']
    assert [a.kind for a in plan.for_vm('vmC')] == [
        ActionKind.DESTROY,
        ActionKind.REMOVE_ASSET,
    ]
    assert 'esx2:/x.iso' in plan.actions[2].describe()
    assert ActionResult(plan.actions[0], ActionStatus.ALREADY_ABSENT).ok
    assert ActionResult(plan.actions[0], ActionStatus.DEFERRED).ok
    assert not ActionResult(plan.actions[0], ActionStatus.SKIPPED).ok


def test_update_description_shows_old_and_new() -> None:
    action = Action(
        ActionKind.UPDATE_ATTR,
        'web',
        'esx1',
        attr='network_name',
        value=Attr.empty(),
        old_value='Lab',
    )
    assert action.describe() == 'update-attr esx1/web network_name: Lab -> (empty)'
