#!/usr/bin/env python3
"""
Volume provisioning on TrueNAS: zvol, iSCSI extent, target and LUN mapping.

A volume is only usable once all four exist. create_volume() walks the steps
in order and, if any step fails, removes whatever it already created in
reverse order before reporting the failure. delete_volume() removes them in
mapping, extent, volume order and treats resources that are already gone as
deleted, so an interrupted teardown can simply be repeated.
"""

import datetime
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypedDict

from truenas_block.api import TrueNASClient
from truenas_block.api_types import (
    LUN_MAX, LUN_MIN, CloneRequest, ExtentCreateRequest, MappingCreateRequest, ProvisionRequest,
    SnapshotCreateRequest, TargetExtentInfo, VolumeCreateRequest, VolumeHandle, VolumeResizeRequest,
    volume_leaf
)
from truenas_block.base_component import BaseComponent, OperationRecord
from truenas_block.components.host import HostSessionResolver
from truenas_block.components.validator import PreflightValidator
from truenas_block.config import StorageConfig, volblocksize_bytes
from truenas_block.errors import (
    ErrorKind, NotFoundError, PartialProvisionError, TrueNASError, UnsupportedOperationError,
    ValidationError
)
from truenas_block.helpers import align_up, format_gib, parse_size, prop_bytes

LUN_ALLOCATION_ATTEMPTS = 3
MAX_AUTO_DISKS = 1000


class ProvisionState(Enum):
    INIT = 'init'
    VOLUME_CREATED = 'volume_created'
    EXTENT_CREATED = 'extent_created'
    TARGET_RESOLVED = 'target_resolved'
    MAPPED = 'mapped'
    DONE = 'done'
    ROLLING_BACK = 'rolling_back'


class VolumeEntry(TypedDict):
    volname: str
    name: str
    lun: int
    size: int
    vmid: Optional[int]
    extent_id: int
    format: str


class CapacityInfo(TypedDict):
    total: int
    available: int
    used: int
    active: bool


class OrphanInfo(TypedDict):
    kind: str
    id: Any
    name: str
    reason: str


# Which volume states support each feature: 'current' is the live volume,
# 'snap' a snapshot of it.
FEATURES: Dict[str, Tuple[str, ...]] = {
    'snapshot': ('current',),
    'clone': ('snap', 'current'),
    'copy': ('snap', 'current'),
    'rollback': ('snap',),
    'resize': ('current',),
    'discard': ('current',),
    'sparseinit': ('current',),
}


def _is_lun_conflict(error: TrueNASError) -> bool:
    text = str(error).lower()
    return error.kind is ErrorKind.VALIDATION and 'lun' in text and (
        'already' in text or 'in use' in text or 'exists' in text
    )


def _is_in_use(error: TrueNASError) -> bool:
    text = str(error).lower()
    return 'in use' in text or 'busy' in text


class VolumeProvisioner(BaseComponent):
    """Creates, resizes, snapshots and removes iSCSI-exported zvols."""

    def __init__(self, client: TrueNASClient, validator: PreflightValidator, config: StorageConfig,
                 host: Optional[HostSessionResolver] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(config, logger)
        self.client = client
        self.validator = validator
        self.host = host
        self.parent: str = self.config['dataset']
        self.target_iqn: str = self.config['target_iqn']
        self._target_locks: Dict[int, threading.Lock] = {}
        self._target_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Create

    def create_volume(self, request: ProvisionRequest) -> VolumeHandle:
        """
        Create a zvol and export it as a LUN on the configured target.

        Raises:
            PreflightError: a precondition failed; nothing was created
            PartialProvisionError: a step failed and so did part of the cleanup
            TrueNASError: a step failed; everything created was removed again
        """
        with self.track('create_volume', size=request.size_bytes, vmid=request.vmid) as record:
            if self.config.get('enable_preflight', True):
                self.validator.check(request)

            leaf = request.leaf_name() or self._next_free_name(request.vmid)
            full = f"{self.parent}/{leaf}"
            blocksize = request.blocksize or self.config.get('zvol_blocksize')
            sparse = self.config.get('tn_sparse', True) if request.sparse is None else request.sparse
            volume = VolumeCreateRequest(full, request.size_bytes, sparse,
                                         str(blocksize).upper() if blocksize else None)

            self.logger.info(f"Creating {format_gib(request.size_bytes)} volume {full}")
            handle = self._provision(leaf, full, record, lambda: self.client.create_volume(volume))
            self.logger.info(f"Volume {handle.volname} ready ({full})")
            return handle

    def _provision(self, leaf: str, full: str, record: OperationRecord, create: Callable[[], Any],
                   created: Optional[List[Tuple[str, Any]]] = None) -> VolumeHandle:
        """Run the create, extent and mapping steps; created holds steps already taken by the caller."""
        created = list(created or [])
        state = self._set_state(record, ProvisionState.INIT)
        try:
            create()
            created.append(('volume', full))
            state = self._set_state(record, ProvisionState.VOLUME_CREATED)

            extent = self.client.create_extent(ExtentCreateRequest(leaf, full))
            created.append(('extent', extent['id']))
            state = self._set_state(record, ProvisionState.EXTENT_CREATED)

            target = self.client.resolve_target(self.target_iqn)
            state = self._set_state(record, ProvisionState.TARGET_RESOLVED)

            mapping = self._map_lun(target['id'], extent['id'])
            created.append(('mapping', mapping['id']))
            state = self._set_state(record, ProvisionState.MAPPED)

            handle = VolumeHandle(leaf, mapping['lunid'])
            self._set_state(record, ProvisionState.DONE)
            return handle
        except Exception as e:
            if not created:
                raise
            self.logger.warning(f"Provisioning {full} failed in state {state.value}: {e}")
            self._set_state(record, ProvisionState.ROLLING_BACK)
            self._rollback(created, e)
            raise

    def _set_state(self, record: OperationRecord, state: ProvisionState) -> ProvisionState:
        record['details']['state'] = state.value
        self.logger.debug(f"Provisioning state: {state.value}")
        return state

    def _rollback(self, created: List[Tuple[str, Any]], original: BaseException) -> None:
        """Undo created steps newest first; raise PartialProvisionError if any undo fails."""
        undo = {
            'mapping': self.client.delete_mapping,
            'extent': self.client.delete_extent,
            'volume': lambda name: self.client.delete_dataset(name, recursive=True),
            'snapshot': self.client.delete_snapshot,
        }
        cleanup_errors: List[BaseException] = []
        leftovers: List[str] = []
        for kind, ident in reversed(created):
            try:
                undo[kind](ident)
                self.logger.info(f"Rolled back {kind} {ident}")
            except Exception as e:
                self.logger.error(f"Rollback of {kind} {ident} failed: {e}")
                cleanup_errors.append(e)
                leftovers.append(f"{kind} {ident}")

        if cleanup_errors:
            raise PartialProvisionError(original, cleanup_errors, leftovers) from original

    def _target_lock(self, target_id: int) -> threading.Lock:
        with self._target_locks_guard:
            return self._target_locks.setdefault(target_id, threading.Lock())

    def _map_lun(self, target_id: int, extent_id: int) -> TargetExtentInfo:
        """Map extent_id on target_id at the lowest free LUN."""
        with self._target_lock(target_id):
            for attempt in range(1, LUN_ALLOCATION_ATTEMPTS + 1):
                used = {m.get('lunid') for m in self.client.target_mappings(target_id, fresh=True)}
                lun = next((n for n in range(LUN_MIN, LUN_MAX + 1) if n not in used), None)
                if lun is None:
                    raise ValidationError(
                        f"No free LUN on target {self.target_iqn}",
                        f"all {LUN_MAX - LUN_MIN + 1} LUNs are mapped; remove unused volumes",
                        target=self.target_iqn,
                    )
                try:
                    mapping = self.client.create_mapping(MappingCreateRequest(target_id, extent_id, lun))
                except TrueNASError as e:
                    if attempt < LUN_ALLOCATION_ATTEMPTS and _is_lun_conflict(e):
                        self.logger.warning(f"LUN {lun} was taken concurrently; picking another")
                        continue
                    raise
                self.logger.info(f"Mapped extent {extent_id} as LUN {mapping.get('lunid', lun)}")
                return {'lunid': lun} | mapping
        raise ValidationError(f"Could not allocate a LUN on {self.target_iqn}")

    def _next_free_name(self, vmid: Optional[int]) -> str:
        if vmid is None:
            raise ValidationError("A volume name or vmid is required",
                                  "pass name=... or vmid=... in the ProvisionRequest")
        taken = {str(v.get('name') or v.get('id') or '').rsplit('/', 1)[-1]
                 for v in self.client.child_volumes(self.parent)}
        taken |= {e.get('name') for e in self.client.extents(fresh=True)}
        for n in range(MAX_AUTO_DISKS):
            if (candidate := f"vm-{vmid}-disk-{n}") not in taken:
                return candidate
        raise ValidationError(f"No free disk name for VM {vmid} under {self.parent}",
                              f"vm-{vmid}-disk-0 .. vm-{vmid}-disk-{MAX_AUTO_DISKS - 1} are all taken")

    # ------------------------------------------------------------------
    # Delete

    def delete_volume(self, handle: VolumeHandle) -> None:
        """
        Remove mapping, extent and zvol of handle.

        Missing pieces count as already deleted. Every step is attempted;
        failures are reported together at the end.
        """
        with self.track('delete_volume', volume=handle.volname):
            full = handle.dataset(self.parent)
            errors: List[TrueNASError] = []

            target_id: Optional[int] = None
            try:
                target_id = self.client.resolve_target(self.target_iqn)['id']
            except TrueNASError as e:
                self.logger.warning(f"Could not resolve target {self.target_iqn}, continuing without it: {e}")

            extent = None
            try:
                extent = self._locate_extent(handle, full)
            except TrueNASError as e:
                errors.append(e)

            if extent is not None:
                try:
                    mappings = [m for m in self.client.mappings(fresh=True) if m.get('extent') == extent['id']]
                    if target_id is not None and not any(
                            m.get('target') == target_id and m.get('lunid') == handle.lun for m in mappings):
                        self.logger.warning(f"{handle.volname} is not mapped as LUN {handle.lun} on "
                                            f"{self.target_iqn}; removing its mappings by extent")
                    for mapping in mappings:
                        self.client.delete_mapping(mapping['id'])
                except TrueNASError as e:
                    errors.append(e)

                try:
                    self._delete_extent(extent['id'])
                except TrueNASError as e:
                    errors.append(e)

            try:
                if not self.client.delete_dataset(full, recursive=True):
                    self.logger.info(f"Volume {full} was already absent")
            except TrueNASError as e:
                errors.append(e)

            if errors:
                raise TrueNASError(
                    f"Deleting {handle.volname} left {len(errors)} error(s): "
                    + "; ".join(str(e) for e in errors),
                    errors=errors,
                )
            self.logger.info(f"Deleted {handle.volname}")

    def _locate_extent(self, handle: VolumeHandle, full: str):
        extents = self.client.extents(fresh=True)
        disk = f"zvol/{full}"
        return (next((e for e in extents if e.get('name') == handle.name), None)
                or next((e for e in extents if e.get('disk') == disk), None))

    def _delete_extent(self, extent_id: int) -> None:
        try:
            self.client.delete_extent(extent_id)
        except TrueNASError as e:
            if not (self.config.get('force_delete_on_inuse') and self.host and _is_in_use(e)):
                raise
            self.logger.warning(f"Extent {extent_id} is in use; logging out of {self.target_iqn} and retrying")
            self.host.logout()
            self.client.delete_extent(extent_id)

    # ------------------------------------------------------------------
    # Resize

    def resize_volume(self, handle: VolumeHandle, new_size: int | str,
                      current_size: Optional[int] = None) -> int:
        """
        Grow a volume to new_size (aligned up to its block size).

        Shrinking is refused; with current_size given the refusal happens
        before any remote call.

        Returns:
            The resulting volume size in bytes
        """
        with self.track('resize_volume', volume=handle.volname, size=new_size):
            try:
                wanted = parse_size(new_size)
            except ValueError as e:
                raise ValidationError(str(e), "use bytes or a value such as '64G'") from None
            if current_size is not None and wanted < current_size:
                raise self._shrink_error(handle, wanted, current_size)

            full = handle.dataset(self.parent)
            info = self.client.dataset(full)
            if info is None:
                raise NotFoundError(f"Volume {full} does not exist", volume=handle.volname)
            current = prop_bytes(info.get('volsize')) or 0
            if wanted < current:
                raise self._shrink_error(handle, wanted, current)

            blocksize = prop_bytes(info.get('volblocksize')) or volblocksize_bytes(self.config)
            aligned = align_up(wanted, blocksize)
            if aligned == current:
                self.logger.info(f"{handle.volname} is already {format_gib(current)}; nothing to do")
                return current

            self.validator.check_space(aligned - current)
            self.client.resize_volume(VolumeResizeRequest(full, aligned))
            self.logger.info(f"Resized {handle.volname} from {format_gib(current)} to {format_gib(aligned)}")
            return aligned

    @staticmethod
    def _shrink_error(handle: VolumeHandle, wanted: int, current: int) -> ValidationError:
        return ValidationError(
            f"Shrinking {handle.volname} from {format_gib(current)} to {format_gib(wanted)} is not supported",
            "volumes can only grow",
            requested=wanted,
            current=current,
        )

    # ------------------------------------------------------------------
    # Snapshots and clones

    def snapshot(self, handle: VolumeHandle, name: str) -> str:
        with self.track('snapshot', volume=handle.volname, snapshot=name):
            request = SnapshotCreateRequest(handle.dataset(self.parent), name)
            self._unsupported_guard('snapshot', lambda: self.client.create_snapshot(request))
            self.logger.info(f"Created snapshot {request.full_name}")
            return request.full_name

    def delete_snapshot(self, handle: VolumeHandle, name: str) -> None:
        with self.track('delete_snapshot', volume=handle.volname, snapshot=name):
            full_name = f"{handle.dataset(self.parent)}@{name}"
            if not self.client.delete_snapshot(full_name):
                self.logger.info(f"Snapshot {full_name} was already absent")

    def list_snapshots(self, handle: VolumeHandle) -> List[str]:
        snapshots = self.client.snapshots(handle.dataset(self.parent))
        return sorted(s.get('snapshot_name') or str(s.get('name', '')).split('@', 1)[-1] for s in snapshots)

    def rollback(self, handle: VolumeHandle, name: str) -> None:
        """Roll handle back to snapshot name; needs the WebSocket transport."""
        with self.track('rollback', volume=handle.volname, snapshot=name):
            if self.config.get('api_transport') != 'ws':
                raise UnsupportedOperationError(
                    "Snapshot rollback is only available over the WebSocket API; set api_transport to 'ws'",
                    volume=handle.volname,
                )
            full_name = f"{handle.dataset(self.parent)}@{name}"
            self._unsupported_guard('rollback', lambda: self.client.rollback_snapshot(full_name))
            self.logger.info(f"Rolled back {handle.volname} to {name}")

    def clone(self, source: VolumeHandle, snapshot: Optional[str] = None, vmid: Optional[int] = None,
              name: Optional[str] = None) -> VolumeHandle:
        """
        Clone source (from snapshot, or from its current state) into a new
        exported volume.
        """
        with self.track('clone', source=source.volname, snapshot=snapshot) as record:
            if name:
                leaf = volume_leaf(name, vmid)
            else:
                leaf = self._next_free_name(vmid if vmid is not None else source.vmid)

            temporary: List[Tuple[str, Any]] = []
            if snapshot is None:
                snapshot = f"clone-{leaf}-{datetime.datetime.now().strftime('%Y%m%d%H%M%S')}"
                temporary.append(('snapshot', self.snapshot(source, snapshot)))

            full = f"{self.parent}/{leaf}"
            request = CloneRequest(f"{source.dataset(self.parent)}@{snapshot}", full)
            handle = self._provision(
                leaf, full, record,
                lambda: self._unsupported_guard('clone', lambda: self.client.clone_snapshot(request)),
                created=temporary,
            )
            self.logger.info(f"Cloned {source.volname}@{snapshot} to {handle.volname}")
            return handle

    @staticmethod
    def _unsupported_guard(feature: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except TrueNASError as e:
            if e.kind is ErrorKind.UNSUPPORTED and not isinstance(e, UnsupportedOperationError):
                raise UnsupportedOperationError(f"{feature} is not supported by this appliance: {e}") from e
            raise

    def has_feature(self, feature: str, snapshot: Optional[str] = None) -> bool:
        if feature == 'rollback' and self.config.get('api_transport') != 'ws':
            return False
        return ('snap' if snapshot else 'current') in FEATURES.get(feature, ())

    # ------------------------------------------------------------------
    # Inventory

    def volume_size(self, handle: VolumeHandle) -> int:
        full = handle.dataset(self.parent)
        info = self.client.dataset(full)
        if info is None:
            raise NotFoundError(f"Volume {full} does not exist", volume=handle.volname)
        return prop_bytes(info.get('volsize')) or 0

    def current_lun(self, name: str) -> Optional[int]:
        """LUN the appliance currently maps the extent called name to."""
        extent = self.client.find_extent(name, fresh=True)
        if extent is None:
            return None
        target_id = self.client.resolve_target(self.target_iqn)['id']
        for mapping in self.client.target_mappings(target_id, fresh=True):
            if mapping.get('extent') == extent['id']:
                return mapping.get('lunid')
        return None

    def list_volumes(self, vmid: Optional[int] = None) -> List[VolumeEntry]:
        """One entry per mapping on the configured target backed by a zvol under the parent dataset."""
        target_id = self.client.resolve_target(self.target_iqn)['id']
        extents = {e['id']: e for e in self.client.extents()}
        sizes = {
            str(v.get('id') or v.get('name')): prop_bytes(v.get('volsize')) or 0
            for v in self.client.child_volumes(self.parent)
        }
        prefix = f"zvol/{self.parent}/"

        entries: List[VolumeEntry] = []
        for mapping in sorted(self.client.target_mappings(target_id), key=lambda m: m.get('lunid', 0)):
            extent = extents.get(mapping.get('extent'))
            if extent is None or not str(extent.get('disk', '')).startswith(prefix):
                continue
            try:
                handle = VolumeHandle(extent['name'], mapping['lunid'])
            except ValidationError:
                self.logger.debug(f"Skipping extent {extent.get('name')!r} with an unsupported name")
                continue
            if vmid is not None and handle.vmid != vmid:
                continue
            entries.append({
                'volname': handle.volname,
                'name': handle.name,
                'lun': handle.lun,
                'size': sizes.get(extent['disk'][len('zvol/'):], 0),
                'vmid': handle.vmid,
                'extent_id': extent['id'],
                'format': 'raw',
            })
        return entries

    def capacity(self) -> CapacityInfo:
        """Usage of the parent dataset; inactive instead of raising when unavailable."""
        try:
            info = self.client.dataset(self.parent)
        except TrueNASError as e:
            self.logger.warning(f"Could not read capacity of {self.parent}: {e}")
            info = None
        if not info:
            return {'total': 0, 'available': 0, 'used': 0, 'active': False}

        available = prop_bytes(info.get('available')) or 0
        used = prop_bytes(info.get('written'))
        if used is None:
            used = prop_bytes(info.get('used')) or 0
        quota = prop_bytes(info.get('quota')) or 0
        total = quota if quota else available + used
        if quota:
            available = min(available, max(quota - used, 0))
        return {'total': total, 'available': available, 'used': used, 'active': True}

    def find_orphans(self) -> List[OrphanInfo]:
        """
        Resources left behind by interrupted operations: extents whose zvol
        is gone, mappings whose extent is gone, and zvols without an extent.
        """
        volumes = {str(v.get('id') or v.get('name')) for v in self.client.child_volumes(self.parent)}
        extents = self.client.extents(fresh=True)
        mappings = self.client.mappings(fresh=True)
        prefix = f"zvol/{self.parent}/"

        orphans: List[OrphanInfo] = []
        for mapping in mappings:
            if mapping.get('extent') not in {e['id'] for e in extents}:
                orphans.append({
                    'kind': 'mapping',
                    'id': mapping['id'],
                    'name': f"target {mapping.get('target')} LUN {mapping.get('lunid')}",
                    'reason': f"extent {mapping.get('extent')} does not exist",
                })

        backed = set()
        for extent in extents:
            disk = str(extent.get('disk') or '')
            if not disk.startswith(prefix):
                continue
            backed.add(disk[len('zvol/'):])
            if disk[len('zvol/'):] not in volumes:
                orphans.append({
                    'kind': 'extent',
                    'id': extent['id'],
                    'name': extent.get('name', ''),
                    'reason': f"backing zvol {disk[len('zvol/'):]} does not exist",
                })

        for volume in sorted(volumes - backed):
            orphans.append({
                'kind': 'volume',
                'id': volume,
                'name': volume.rsplit('/', 1)[-1],
                'reason': "zvol has no iSCSI extent",
            })
        return orphans

    def cleanup_orphans(self, dry_run: bool = True) -> List[OrphanInfo]:
        """Delete orphans in mapping, extent, volume order. Returns what was (or would be) removed."""
        with self.track('cleanup_orphans', dry_run=dry_run):
            orphans = self.find_orphans()
            if dry_run:
                for orphan in orphans:
                    self.logger.info(f"Would remove orphaned {orphan['kind']} {orphan['name']}: {orphan['reason']}")
                return orphans

            order = {'mapping': 0, 'extent': 1, 'volume': 2}
            delete = {
                'mapping': self.client.delete_mapping,
                'extent': self.client.delete_extent,
                'volume': lambda name: self.client.delete_dataset(name, recursive=True),
            }
            removed: List[OrphanInfo] = []
            errors: List[TrueNASError] = []
            for orphan in sorted(orphans, key=lambda o: order[o['kind']]):
                try:
                    delete[orphan['kind']](orphan['id'])
                    removed.append(orphan)
                    self.logger.info(f"Removed orphaned {orphan['kind']} {orphan['name']}")
                except TrueNASError as e:
                    errors.append(e)
            if errors:
                raise TrueNASError(
                    f"Orphan cleanup removed {len(removed)} of {len(orphans)}; errors: "
                    + "; ".join(str(e) for e in errors),
                    removed=removed,
                    errors=errors,
                )
            return removed
