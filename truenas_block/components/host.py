#!/usr/bin/env python3
"""
Host side of the iSCSI export: initiator sessions and block device lookup.

All host commands (iscsiadm, multipath, udevadm, scsi_id) go through an
injectable runner so the logic can be exercised without touching the host.
"""

import logging
import os
import re
import socket
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from truenas_block.base_component import BaseComponent
from truenas_block.config import StorageConfig
from truenas_block.errors import DeviceNotReadyError, TransientNetworkError

PORTAL_PROBE_TIMEOUT = 5.0
RESCAN_EVERY = 5

# Arguments following these iscsiadm options are never logged
_SECRET_SETTINGS = ('node.session.auth.password',)


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[[List[str]], CommandResult]


def run_command(command: List[str], timeout: float = 30.0) -> CommandResult:
    """Run a host command, capturing text output. Never raises for a failed command."""
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        return CommandResult(127, '', str(e))
    except subprocess.TimeoutExpired:
        return CommandResult(124, '', f"timed out after {timeout:.0f}s")
    return CommandResult(result.returncode, result.stdout, result.stderr)


def normalize_portal(portal: str) -> str:
    """Strip IPv6 brackets and a trailing ',<tpgt>' from a portal address."""
    portal = (portal or '').strip()
    if m := re.match(r'^\[(.+)\]:(\d+)', portal):
        portal = f"{m.group(1)}:{m.group(2)}" + portal[m.end():]
    return re.sub(r',\d+$', '', portal)


def probe_portal(portal: str, timeout: float = PORTAL_PROBE_TIMEOUT) -> None:
    """
    TCP connect to host:port.

    Raises:
        TransientNetworkError: if the portal does not accept connections
    """
    host, sep, port = portal.rpartition(':')
    if not sep or not host or not port.isdigit():
        return
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            pass
    except OSError as e:
        raise TransientNetworkError(f"iSCSI portal {portal} is not reachable (TCP connect failed: {e})",
                                    portal=portal) from e


def redact_command(command: List[str]) -> str:
    shown = list(command)
    for i, arg in enumerate(shown[:-2]):
        if arg in _SECRET_SETTINGS and shown[i + 1] == '-v':
            shown[i + 2] = '***'
    return ' '.join(shown)


class HostSessionResolver(BaseComponent):
    """
    Logs the host into the configured target and maps LUNs to device paths.

    Device nodes appear asynchronously after login or a rescan, so
    resolve_device() polls within a bounded window before giving up.
    """

    def __init__(self, config: StorageConfig, runner: Optional[Runner] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 probe: Callable[[str], None] = probe_portal,
                 by_path_dir: str = '/dev/disk/by-path', sys_block: str = '/sys/block',
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(config, logger)
        timeout = float(self.config.get('command_timeout', 30.0))
        self._runner: Runner = runner or (lambda cmd: run_command(cmd, timeout))
        self._sleep = sleep
        self._clock = clock
        self._probe = probe
        self.by_path_dir = by_path_dir
        self.sys_block = sys_block

        self.iqn: str = self.config['target_iqn']
        self.primary = normalize_portal(self.config['discovery_portal'])
        configured = [normalize_portal(p) for p in self.config.get('portals') or [] if p]
        self.extra_portals = [p for p in configured if p != self.primary]

    @property
    def portals(self) -> List[str]:
        return [self.primary] + self.extra_portals

    @property
    def multipath(self) -> bool:
        return bool(self.config.get('use_multipath')) and not self.config.get('use_by_path')

    # ------------------------------------------------------------------
    # Command helpers

    def _run(self, *command: str, description: Optional[str] = None) -> CommandResult:
        result = self._runner(list(command))
        if not result.ok:
            self.logger.warning(
                f"{description or redact_command(list(command))} failed "
                f"(rc={result.returncode}): {result.stderr.strip()}"
            )
        return result

    def _lines(self, *command: str) -> List[str]:
        result = self._runner(list(command))
        return [line for line in result.stdout.splitlines() if line.strip()]

    def settle(self) -> None:
        self._run('udevadm', 'settle')

    # ------------------------------------------------------------------
    # Sessions

    def sessions_active(self) -> bool:
        """True if `iscsiadm -m session` lists the configured IQN."""
        return any(self.iqn in line.split() for line in self._lines('iscsiadm', '-m', 'session'))

    def ensure_session(self) -> bool:
        """
        Discover and log in to every portal of the target.

        Returns:
            False if a session already existed, True if one was established

        Raises:
            TransientNetworkError: the primary portal is unreachable or no
                session exists after login and one retry
        """
        with self.track('ensure_session', iqn=self.iqn):
            if self.sessions_active():
                self.logger.debug(f"iSCSI session to {self.iqn} already active")
                return False

            self._probe(self.primary)
            for portal in self.extra_portals:
                try:
                    self._probe(portal)
                except TransientNetworkError as e:
                    self.logger.warning(str(e))

            for portal in self.portals:
                self._run('iscsiadm', '-m', 'discovery', '-t', 'sendtargets', '-p', portal,
                          description=f"iSCSI discovery on {portal}")

            node_re = re.compile(rf'^(\S+)\s+{re.escape(self.iqn)}$')
            for line in self._lines('iscsiadm', '-m', 'node', '-T', self.iqn):
                if m := node_re.match(line.strip()):
                    self._login_node(normalize_portal(m.group(1)))

            for portal in self.extra_portals:
                self._run('iscsiadm', '-m', 'node', '-T', self.iqn, '-p', portal, '--login',
                          description=f"iSCSI login on {portal}")

            if not self.sessions_active():
                self.logger.warning(f"No session for {self.iqn} after login; retrying discovery and login")
                self._run('iscsiadm', '-m', 'discovery', '-t', 'sendtargets', '-p', self.primary,
                          description="iSCSI discovery retry")
                for portal in self.extra_portals + [self.primary]:
                    self._run('iscsiadm', '-m', 'node', '-T', self.iqn, '-p', portal, '--login',
                              description=f"iSCSI login retry on {portal}")
                if not self.sessions_active():
                    raise TransientNetworkError(
                        f"No iSCSI session to {self.iqn} after login on {', '.join(self.portals)}",
                        iqn=self.iqn,
                    )

            self.settle()
            self.logger.info(f"Logged in to {self.iqn} via {', '.join(self.portals)}")
            return True

    def _login_node(self, portal: str) -> None:
        base = ['iscsiadm', '-m', 'node', '-T', self.iqn, '-p', portal]
        self._run(*base, '-o', 'update', '-n', 'node.startup', '-v', 'automatic',
                  description=f"Setting node.startup on {portal}")

        if self.config.get('chap_user') and self.config.get('chap_password'):
            for setting, value in (
                ('node.session.auth.authmethod', 'CHAP'),
                ('node.session.auth.username', self.config['chap_user']),
                ('node.session.auth.password', self.config['chap_password']),
            ):
                self._run(*base, '-o', 'update', '-n', setting, '-v', value,
                          description=f"Setting {setting} on {portal}")

        self._run(*base, '--login', description=f"iSCSI login on {portal}")

    def rescan(self) -> None:
        """Refresh the kernel's and multipathd's view of the target."""
        self._run('iscsiadm', '-m', 'session', '-R')
        self.settle()
        if self.config.get('use_multipath'):
            self._run('multipath', '-r')
            self.settle()

    def logout(self) -> None:
        """Log out of the target on every portal and delete the node records."""
        with self.track('logout', iqn=self.iqn):
            for portal in self.portals:
                self._run('iscsiadm', '-m', 'node', '-p', portal, '--targetname', self.iqn, '--logout')
                self._run('iscsiadm', '-m', 'node', '-p', portal, '--targetname', self.iqn, '-o', 'delete')

    def session_has_no_luns(self) -> bool:
        """True when a session to the target exists but exposes no LUNs."""
        result = self._runner(['iscsiadm', '-m', 'session', '-P', '3'])
        if not result.ok:
            return False
        target_re = re.compile(rf'Target:\s*{re.escape(self.iqn)}(\s|$)')
        for stanza in re.split(r'\n\s*\n', result.stdout):
            if target_re.search(stanza):
                return not re.search(r'Lun:\s*\d+', stanza)
        return False

    # ------------------------------------------------------------------
    # Devices

    def by_path_pattern(self, lun: int) -> str:
        return f"{self.by_path_dir}/ip-*-iscsi-{self.iqn}-lun-{lun}"

    def find_by_path(self, lun: int) -> Optional[str]:
        pattern = re.compile(rf'^ip-.*-iscsi-{re.escape(self.iqn)}-lun-{lun}$')
        try:
            entries = sorted(os.listdir(self.by_path_dir))
        except FileNotFoundError:
            return None
        for entry in entries:
            path = os.path.join(self.by_path_dir, entry)
            if pattern.match(entry) and os.path.exists(path):
                return path
        return None

    def multipath_device(self, leaf: str) -> Optional[str]:
        """Map a SCSI disk leaf (e.g. 'sdc') to the dm device holding it."""
        try:
            entries = sorted(os.listdir(self.sys_block))
        except FileNotFoundError:
            return None
        for entry in entries:
            if not re.match(r'^dm-\d+$', entry):
                continue
            if not os.path.exists(os.path.join(self.sys_block, entry, 'slaves', leaf)):
                continue
            try:
                with open(os.path.join(self.sys_block, entry, 'dm', 'name')) as f:
                    name = f.read().strip()
            except OSError:
                name = ''
            return f"/dev/mapper/{name}" if name else f"/dev/{entry}"
        return None

    def resolve_device(self, lun: int) -> str:
        """
        Wait for the device node of lun and return its path.

        Prefers the multipath map when multipath is enabled and by-path is not
        forced; otherwise returns the /dev/disk/by-path entry.

        Raises:
            DeviceNotReadyError: the device did not appear within device_wait_timeout
        """
        wait = float(self.config.get('device_wait_timeout', 10.0))
        interval = float(self.config.get('device_poll_interval', 0.5))

        with self.track('resolve_device', lun=lun):
            deadline = self._clock() + wait
            polls = 0
            while True:
                polls += 1
                self.settle()
                if path := self.find_by_path(lun):
                    device = self._prefer_multipath(path)
                    self.logger.info(f"LUN {lun} of {self.iqn} is {device}")
                    return device

                if self._clock() >= deadline:
                    raise DeviceNotReadyError(
                        f"Device for LUN {lun} (IQN {self.iqn}, dataset {self.config.get('dataset')}) "
                        f"did not appear within {wait:.1f}s; expected {self.by_path_pattern(lun)}",
                        lun=lun,
                        iqn=self.iqn,
                        pattern=self.by_path_pattern(lun),
                    )
                if polls % RESCAN_EVERY == 0:
                    self.logger.debug(f"LUN {lun} not visible after {polls} polls; rescanning")
                    self.rescan()
                self._sleep(interval)

    def _prefer_multipath(self, by_path: str) -> str:
        if not self.multipath:
            return by_path
        leaf = os.path.basename(os.path.realpath(by_path))
        return self.multipath_device(leaf) or by_path

    def flush_multipath(self, device: str) -> None:
        """Flush the multipath map backing device before its LUN goes away."""
        if not self.config.get('use_multipath'):
            return
        result = self._run('scsi_id', '-g', '-u', '-d', device)
        if wwid := result.stdout.strip():
            self._run('multipath', '-f', wwid)
