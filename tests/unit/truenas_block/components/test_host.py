#!/usr/bin/env python3
"""
Unit tests for the HostSessionResolver.

Host commands go through FakeRunner; /dev/disk/by-path and /sys/block are
laid out under tmp_path.
"""

import os
import subprocess
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../../../')))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../../')))

from fakes import TARGET_IQN, FakeRunner, make_config
from truenas_block.components.host import (
    CommandResult, HostSessionResolver, normalize_portal, redact_command, run_command
)
from truenas_block.config import validate_config
from truenas_block.errors import DeviceNotReadyError, TransientNetworkError

SESSION_LINE = f"tcp: [1] 10.0.0.5:3260,1 {TARGET_IQN} (non-flash)\n"
NODE_LINE = f"10.0.0.5:3260,1 {TARGET_IQN}\n"


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def devices(tmp_path):
    """Empty by-path and sys/block trees."""
    by_path = tmp_path / 'by-path'
    sys_block = tmp_path / 'sys-block'
    dev = tmp_path / 'dev'
    for d in (by_path, sys_block, dev):
        d.mkdir()
    return {'by_path': by_path, 'sys_block': sys_block, 'dev': dev}


def add_lun(devices, lun, leaf='sdc', portal='10.0.0.5:3260'):
    target = devices['dev'] / leaf
    target.touch()
    link = devices['by_path'] / f"ip-{portal}-iscsi-{TARGET_IQN}-lun-{lun}"
    link.symlink_to(target)
    return str(link)


def add_multipath(devices, dm, leaf, name=None):
    slaves = devices['sys_block'] / dm / 'slaves'
    slaves.mkdir(parents=True)
    (slaves / leaf).touch()
    if name:
        (devices['sys_block'] / dm / 'dm').mkdir()
        (devices['sys_block'] / dm / 'dm' / 'name').write_text(name + "\n")


def make_resolver(runner, clock, devices, probed=None, unreachable=(), **overrides):
    def probe(portal):
        if probed is not None:
            probed.append(portal)
        if portal in unreachable:
            raise TransientNetworkError(f"iSCSI portal {portal} is not reachable")

    config = validate_config(make_config(**overrides))
    return HostSessionResolver(
        config, runner=runner, sleep=clock.sleep, clock=clock, probe=probe,
        by_path_dir=str(devices['by_path']), sys_block=str(devices['sys_block']),
    )


def login_runner(sessions_after_login=True):
    """Runner whose session list is empty until a login command has run."""
    state = {'logged_in': False}

    def login(command):
        state['logged_in'] = sessions_after_login
        return CommandResult(0, '', '')

    def session(command):
        return CommandResult(0, SESSION_LINE if state['logged_in'] else '', '')

    return FakeRunner({
        'iscsiadm -m session': session,
        f"iscsiadm -m node -T {TARGET_IQN}": NODE_LINE,
        f"iscsiadm -m node -T {TARGET_IQN} -p 10.0.0.5:3260 --login": login,
        f"iscsiadm -m node -T {TARGET_IQN} -p 10.0.0.6:3260 --login": login,
    })


# ----------------------------------------------------------------------
# Helpers

def test_normalize_portal():
    assert normalize_portal('10.0.0.5:3260,1') == '10.0.0.5:3260'
    assert normalize_portal('[fd00::5]:3260') == 'fd00::5:3260'
    assert normalize_portal(' 10.0.0.5:3260 ') == '10.0.0.5:3260'


def test_redact_command_hides_chap_secret():
    command = ['iscsiadm', '-m', 'node', '-o', 'update', '-n', 'node.session.auth.password', '-v', 's3cret']
    assert 's3cret' not in redact_command(command)
    assert redact_command(command).endswith('-v ***')


def test_run_command_maps_failures():
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = subprocess.CompletedProcess(['x'], 2, 'out', 'err')
        assert run_command(['x']) == CommandResult(2, 'out', 'err')

        mock_run.side_effect = FileNotFoundError("no iscsiadm")
        assert run_command(['iscsiadm']).returncode == 127

        mock_run.side_effect = subprocess.TimeoutExpired(['x'], 5)
        assert run_command(['x'], timeout=5).returncode == 124


# ----------------------------------------------------------------------
# Sessions

def test_existing_session_is_reused(fake_runner, clock, devices):
    resolver = make_resolver(fake_runner, clock, devices)
    assert resolver.sessions_active()
    assert resolver.ensure_session() is False
    assert fake_runner.ran('iscsiadm', '-m', 'discovery') == []


def test_login_flow(clock, devices):
    runner = login_runner()
    probed = []
    resolver = make_resolver(runner, clock, devices, probed=probed)

    assert resolver.ensure_session() is True

    assert probed == ['10.0.0.5:3260']
    assert runner.ran('iscsiadm', '-m', 'discovery', '-t', 'sendtargets', '-p', '10.0.0.5:3260')
    assert runner.ran('iscsiadm', '-m', 'node', '-T', TARGET_IQN, '-p', '10.0.0.5:3260',
                      '-o', 'update', '-n', 'node.startup', '-v', 'automatic')
    assert runner.ran('iscsiadm', '-m', 'node', '-T', TARGET_IQN, '-p', '10.0.0.5:3260', '--login')
    assert runner.ran('udevadm', 'settle')
    assert not any('node.session.auth.password' in c for c in runner.commands)


def test_login_applies_chap(clock, devices):
    runner = login_runner()
    resolver = make_resolver(runner, clock, devices, chap_user='initiator', chap_password='s3cret')
    resolver.ensure_session()
    settings = [c[c.index('-n') + 1:] for c in runner.commands if '-n' in c]
    assert ['node.session.auth.authmethod', '-v', 'CHAP'] in settings
    assert ['node.session.auth.username', '-v', 'initiator'] in settings
    assert ['node.session.auth.password', '-v', 's3cret'] in settings


def test_extra_portals(clock, devices):
    runner = login_runner()
    probed = []
    resolver = make_resolver(runner, clock, devices, probed=probed,
                             portals=['10.0.0.6:3260', '10.0.0.5:3260'], unreachable=('10.0.0.6:3260',))

    assert resolver.portals == ['10.0.0.5:3260', '10.0.0.6:3260']
    assert resolver.ensure_session() is True
    assert probed == ['10.0.0.5:3260', '10.0.0.6:3260']
    assert runner.ran('iscsiadm', '-m', 'discovery', '-t', 'sendtargets', '-p', '10.0.0.6:3260')
    assert runner.ran('iscsiadm', '-m', 'node', '-T', TARGET_IQN, '-p', '10.0.0.6:3260', '--login')


def test_unreachable_primary_portal_is_fatal(clock, devices):
    runner = login_runner()
    resolver = make_resolver(runner, clock, devices, unreachable=('10.0.0.5:3260',))
    with pytest.raises(TransientNetworkError):
        resolver.ensure_session()
    assert runner.ran('iscsiadm', '-m', 'discovery') == []


def test_no_session_after_retry(clock, devices):
    runner = login_runner(sessions_after_login=False)
    resolver = make_resolver(runner, clock, devices)
    with pytest.raises(TransientNetworkError, match='No iSCSI session'):
        resolver.ensure_session()
    assert len(runner.ran('iscsiadm', '-m', 'discovery')) == 2


def test_rescan_and_logout(fake_runner, clock, devices):
    resolver = make_resolver(fake_runner, clock, devices, portals=['10.0.0.6:3260'])
    resolver.rescan()
    assert fake_runner.ran('iscsiadm', '-m', 'session', '-R')
    assert fake_runner.ran('multipath', '-r')

    resolver.logout()
    for portal in ('10.0.0.5:3260', '10.0.0.6:3260'):
        assert fake_runner.ran('iscsiadm', '-m', 'node', '-p', portal, '--targetname', TARGET_IQN, '--logout')
        assert fake_runner.ran('iscsiadm', '-m', 'node', '-p', portal, '--targetname', TARGET_IQN, '-o', 'delete')


def test_rescan_without_multipath(fake_runner, clock, devices):
    make_resolver(fake_runner, clock, devices, use_multipath=False).rescan()
    assert fake_runner.ran('multipath') == []


def test_session_has_no_luns(clock, devices):
    with_lun = (f"Target: {TARGET_IQN} (non-flash)\n\tCurrent Portal: 10.0.0.5:3260,1\n"
                "\t\tscsi3 Channel 00 Id 0 Lun: 0\n\t\tAttached scsi disk sdc\n")
    without_lun = f"Target: {TARGET_IQN} (non-flash)\n\tCurrent Portal: 10.0.0.5:3260,1\n"

    resolver = make_resolver(FakeRunner({'iscsiadm -m session -P 3': with_lun}), clock, devices)
    assert resolver.session_has_no_luns() is False

    resolver = make_resolver(FakeRunner({'iscsiadm -m session -P 3': without_lun}), clock, devices)
    assert resolver.session_has_no_luns() is True

    resolver = make_resolver(FakeRunner({'iscsiadm -m session -P 3': CommandResult(21, '', 'no sessions')}),
                             clock, devices)
    assert resolver.session_has_no_luns() is False


# ----------------------------------------------------------------------
# Devices

def test_resolve_device_by_path(fake_runner, clock, devices):
    link = add_lun(devices, 3)
    resolver = make_resolver(fake_runner, clock, devices, use_by_path=True)
    assert resolver.resolve_device(3) == link
    assert clock.sleeps == []


def test_resolve_device_prefers_multipath(fake_runner, clock, devices):
    add_lun(devices, 0, leaf='sdc')
    add_multipath(devices, 'dm-2', 'sdb')
    add_multipath(devices, 'dm-3', 'sdc', name='mpatha')
    resolver = make_resolver(fake_runner, clock, devices)
    assert resolver.resolve_device(0) == '/dev/mapper/mpatha'


def test_multipath_without_name_uses_dm_node(fake_runner, clock, devices):
    add_multipath(devices, 'dm-4', 'sdd')
    resolver = make_resolver(fake_runner, clock, devices)
    assert resolver.multipath_device('sdd') == '/dev/dm-4'
    assert resolver.multipath_device('sdz') is None


def test_resolve_device_waits_for_device(fake_runner, clock, devices):
    resolver = make_resolver(fake_runner, clock, devices, use_by_path=True)
    polls = {'n': 0}
    original = resolver.find_by_path

    def appears_late(lun):
        polls['n'] += 1
        if polls['n'] == 3:
            add_lun(devices, lun)
        return original(lun)

    resolver.find_by_path = appears_late
    assert resolver.resolve_device(1).endswith("-lun-1")
    assert clock.sleeps == [0.5, 0.5]


def test_resolve_device_times_out(fake_runner, clock, devices):
    add_lun(devices, 1)
    resolver = make_resolver(fake_runner, clock, devices, device_wait_timeout=5, device_poll_interval=0.5)

    with pytest.raises(DeviceNotReadyError) as excinfo:
        resolver.resolve_device(2)

    error = excinfo.value
    assert error.details['lun'] == 2
    assert error.details['iqn'] == TARGET_IQN
    assert error.details['pattern'].endswith(f"ip-*-iscsi-{TARGET_IQN}-lun-2")
    assert 'tank/proxmox' in str(error)
    assert clock.now >= 5
    assert fake_runner.ran('iscsiadm', '-m', 'session', '-R')
    assert resolver.status['success'] is False


def test_flush_multipath(clock, devices):
    runner = FakeRunner({'scsi_id -g -u -d /dev/sdc': '36589cfc000000abc\n'})
    resolver = make_resolver(runner, clock, devices)
    resolver.flush_multipath('/dev/sdc')
    assert runner.ran('multipath', '-f', '36589cfc000000abc')

    runner = FakeRunner()
    make_resolver(runner, clock, devices, use_multipath=False).flush_multipath('/dev/sdc')
    assert runner.commands == []
