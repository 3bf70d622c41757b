#!/usr/bin/env python3
"""
TrueNASBlockStorage: the single entry point a storage manager talks to.

Builds the connection cache, result cache, dispatcher, API client, validator,
host resolver and provisioner once, and exposes the volume operations on top
of them. Close it (or use it as a context manager) to drop open connections.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from truenas_block.api import TrueNASClient
from truenas_block.api_types import ProvisionRequest, VolumeHandle
from truenas_block.base_component import BaseComponent
from truenas_block.components.host import HostSessionResolver, Runner
from truenas_block.components.provisioner import (
    CapacityInfo, OrphanInfo, VolumeEntry, VolumeProvisioner
)
from truenas_block.components.validator import PreflightValidator
from truenas_block.config import redacted, validate_config
from truenas_block.errors import DeviceNotReadyError, PreflightFailure
from truenas_block.helpers import ResultCache
from truenas_block.transport.connections import Connection, ConnectionCache, ConnectionKey
from truenas_block.transport.dispatcher import Dispatcher
from truenas_block.transport.rest import RestTransport
from truenas_block.transport.ws import WebSocketTransport


class TrueNASBlockStorage(BaseComponent):
    """
    iSCSI block storage backed by zvols on a TrueNAS appliance.

    Volumes are addressed by their volname, 'vol-<name>-lun<N>', or a
    VolumeHandle.
    """

    def __init__(self, config: Dict[str, Any], dispatcher: Optional[Dispatcher] = None,
                 runner: Optional[Runner] = None, host: Optional[HostSessionResolver] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(validate_config(config), logger)

        secure = self.config['api_scheme'] in ('wss', 'https')
        host_name, port = self.config['api_host'], self.config['api_port']
        self.ws_key = ConnectionKey(host_name, port, 'wss' if secure else 'ws')
        self.rest_key = ConnectionKey(host_name, port, 'https' if secure else 'http')

        self.connections = ConnectionCache(self._open_connection, self.config['connection_max_age'])
        self.cache: ResultCache[str, Any] = ResultCache(ttl=self.config['cache_ttl'])
        self.dispatcher = dispatcher or Dispatcher(
            self.connections, self.ws_key, self.rest_key,
            transport=self.config['api_transport'],
            retry_max=self.config['api_retry_max'],
            retry_delay=self.config['api_retry_delay'],
            sleep=sleep,
        )
        self.client = TrueNASClient(
            self.dispatcher, self.cache,
            storage_id=self.config['storage_id'],
            cache_ttl=self.config['cache_ttl'],
            job_timeout=self.config['job_timeout'],
            discovery_portal=self.config['discovery_portal'],
            sleep=sleep,
        )
        self.validator = PreflightValidator(self.client, self.config)
        self.host = host or HostSessionResolver(self.config, runner=runner, sleep=sleep)
        self.provisioner = VolumeProvisioner(self.client, self.validator, self.config, host=self.host)

        self.logger.info(f"TrueNAS storage {self.config['storage_id']} configured for "
                         f"{self.config['api_transport']} transport to {host_name}:{port}")
        self.logger.debug(f"Configuration: {redacted(dict(self.config))}")

    def _open_connection(self, key: ConnectionKey) -> Connection:
        verify = not self.config['api_insecure']
        timeout = self.config['api_timeout']
        if key.scheme in ('ws', 'wss'):
            return WebSocketTransport(
                key.host, key.port, self.config['api_key'], scheme=key.scheme,
                path=self.config['api_ws_path'], timeout=timeout, verify_ssl=verify,
            ).connect()
        return RestTransport(
            key.host, key.port, self.config['api_key'], scheme=key.scheme,
            base_path=self.config['api_rest_path'], timeout=timeout, verify_ssl=verify,
        )

    @staticmethod
    def _handle(volume: str | VolumeHandle) -> VolumeHandle:
        return volume if isinstance(volume, VolumeHandle) else VolumeHandle.parse(volume)

    # ------------------------------------------------------------------
    # Volume lifecycle

    def validate(self, request: ProvisionRequest) -> List[PreflightFailure]:
        return self.validator.validate(request)

    def create_volume(self, request: ProvisionRequest) -> VolumeHandle:
        return self.provisioner.create_volume(request)

    def delete_volume(self, volume: str | VolumeHandle) -> None:
        handle = self._handle(volume)
        if device := self.host.find_by_path(handle.lun):
            self.host.flush_multipath(device)

        self.provisioner.delete_volume(handle)

        if self.config.get('logout_on_free') and self.host.session_has_no_luns():
            self.logger.info(f"No LUNs left on {self.config['target_iqn']}; logging out")
            self.host.logout()

    def resize(self, volume: str | VolumeHandle, new_size: int | str,
               current_size: Optional[int] = None) -> int:
        """
        Grow volume to new_size and rescan the host.

        Pass current_size (the size the caller already knows) to have a shrink
        refused before any remote call; without it the current size is read
        from the appliance first.
        """
        size = self.provisioner.resize_volume(self._handle(volume), new_size, current_size)
        self.host.rescan()
        return size

    def snapshot(self, volume: str | VolumeHandle, name: str) -> str:
        return self.provisioner.snapshot(self._handle(volume), name)

    def delete_snapshot(self, volume: str | VolumeHandle, name: str) -> None:
        self.provisioner.delete_snapshot(self._handle(volume), name)

    def list_snapshots(self, volume: str | VolumeHandle) -> List[str]:
        return self.provisioner.list_snapshots(self._handle(volume))

    def rollback(self, volume: str | VolumeHandle, name: str) -> None:
        self.provisioner.rollback(self._handle(volume), name)
        self.host.rescan()

    def clone(self, volume: str | VolumeHandle, snapshot: Optional[str] = None,
              vmid: Optional[int] = None, name: Optional[str] = None) -> VolumeHandle:
        handle = self.provisioner.clone(self._handle(volume), snapshot, vmid=vmid, name=name)
        self.host.rescan()
        return handle

    def has_feature(self, feature: str, snapshot: Optional[str] = None) -> bool:
        return self.provisioner.has_feature(feature, snapshot)

    # ------------------------------------------------------------------
    # Host devices

    def resolve_device(self, volume: str | VolumeHandle) -> str:
        """
        Log in if needed and return the block device path for volume.

        If the LUN in the handle has no device, the current LUN is looked up
        on the appliance and resolution is retried once with it.
        """
        handle = self._handle(volume)
        self.host.ensure_session()
        try:
            return self.host.resolve_device(handle.lun)
        except DeviceNotReadyError:
            lun = self.provisioner.current_lun(handle.name)
            if lun is None or lun == handle.lun:
                raise
            self.logger.warning(f"{handle.volname} is now mapped as LUN {lun}; retrying with it")
            self.host.rescan()
            return self.host.resolve_device(lun)

    # ------------------------------------------------------------------
    # Inventory

    def list_volumes(self, vmid: Optional[int] = None) -> List[VolumeEntry]:
        return self.provisioner.list_volumes(vmid)

    def volume_size(self, volume: str | VolumeHandle) -> int:
        return self.provisioner.volume_size(self._handle(volume))

    def capacity(self) -> CapacityInfo:
        return self.provisioner.capacity()

    def find_orphans(self) -> List[OrphanInfo]:
        return self.provisioner.find_orphans()

    def cleanup_orphans(self, dry_run: bool = True) -> List[OrphanInfo]:
        return self.provisioner.cleanup_orphans(dry_run)

    def summary(self) -> Dict[str, Any]:
        """Execution summaries of every component plus cache statistics."""
        return {
            'storage': self.get_execution_summary(),
            'provisioner': self.provisioner.get_execution_summary(),
            'validator': self.validator.get_execution_summary(),
            'host': self.host.get_execution_summary(),
            'result_cache': {'entries': len(self.cache), 'hits': self.cache.hits, 'misses': self.cache.misses},
            'connections': {'open': len(self.connections), 'opened': self.connections.opened},
        }

    def close(self) -> None:
        self.connections.close_all()
        self.cache.clear()

    def __enter__(self) -> 'TrueNASBlockStorage':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
