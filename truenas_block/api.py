#!/usr/bin/env python3
"""
Typed client for the TrueNAS middleware methods used by the block storage.

Each method pairs the JSON-RPC call with its REST equivalent and hands both to
the Dispatcher. Read-mostly queries go through the ResultCache; every mutation
drops the cache keys of the resource classes it touches, even when it fails.
"""

import logging
import time
from typing import Any, Callable, List, Optional
from urllib.parse import quote

from truenas_block.api_types import (
    CloneRequest, DatasetInfo, ExtentCreateRequest, ExtentInfo, GlobalConfig, JobInfo,
    MappingCreateRequest, ServiceInfo, SnapshotCreateRequest, SnapshotInfo, TargetExtentInfo,
    TargetInfo, VolumeCreateRequest, VolumeResizeRequest
)
from truenas_block.errors import (
    RemoteCallError, TransientNetworkError, TrueNASError, ValidationError
)
from truenas_block.helpers import ResultCache
from truenas_block.transport.dispatcher import Dispatcher, RestRoute

logger = logging.getLogger(__name__)

TARGETS = 'targets'
EXTENTS = 'extents'
MAPPINGS = 'targetextents'
GLOBAL = 'global'
ALL_KEYS = (TARGETS, EXTENTS, MAPPINGS, GLOBAL)

ROLLBACK_NEEDS_RECURSIVE = "more recent snapshots or bookmarks exist"


def _quoted(name: str) -> str:
    return quote(name, safe='')


def is_job_id(result: Any) -> bool:
    return isinstance(result, int) and not isinstance(result, bool)


class TrueNASClient:
    """Typed wrapper over the appliance API for one storage backend."""

    def __init__(self, dispatcher: Dispatcher, cache: ResultCache[str, Any], storage_id: str = 'truenas',
                 cache_ttl: float = 60.0, job_timeout: float = 300.0, discovery_portal: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.dispatcher = dispatcher
        self.cache = cache
        self.storage_id = storage_id
        self.cache_ttl = cache_ttl
        self.job_timeout = job_timeout
        self.discovery_portal = discovery_portal
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Cache helpers

    def cache_key(self, kind: str) -> str:
        return f"{self.storage_id}:{kind}"

    def invalidate(self, *kinds: str) -> None:
        self.cache.invalidate(*(self.cache_key(k) for k in kinds))

    def _cached(self, kind: str, fresh: bool, fetch: Callable[[], Any]) -> Any:
        if fresh:
            value = fetch()
            self.cache.set(self.cache_key(kind), value, self.cache_ttl)
            return value
        return self.cache.get_or_fetch(self.cache_key(kind), fetch, self.cache_ttl)

    # ------------------------------------------------------------------
    # Queries

    def ping(self) -> Any:
        return self.dispatcher.call('core.ping', [], RestRoute('GET', 'core/ping'))

    def targets(self, fresh: bool = False) -> List[TargetInfo]:
        return self._cached(TARGETS, fresh, lambda: self.dispatcher.call(
            'iscsi.target.query', [], RestRoute('GET', 'iscsi/target')) or [])

    def extents(self, fresh: bool = False) -> List[ExtentInfo]:
        return self._cached(EXTENTS, fresh, lambda: self.dispatcher.call(
            'iscsi.extent.query', [], RestRoute('GET', 'iscsi/extent')) or [])

    def mappings(self, fresh: bool = False) -> List[TargetExtentInfo]:
        return self._cached(MAPPINGS, fresh, lambda: self.dispatcher.call(
            'iscsi.targetextent.query', [], RestRoute('GET', 'iscsi/targetextent')) or [])

    def global_config(self, fresh: bool = False) -> GlobalConfig:
        return self._cached(GLOBAL, fresh, lambda: self.dispatcher.call(
            'iscsi.global.config', [], RestRoute('GET', 'iscsi/global')) or {})

    def dataset(self, name: str) -> Optional[DatasetInfo]:
        """Dataset or zvol properties, or None when it does not exist."""
        return self.dispatcher.call(
            'pool.dataset.get_instance', [name],
            RestRoute('GET', f"pool/dataset/id/{_quoted(name)}"),
            not_found_ok=True,
        )

    def child_volumes(self, parent: str) -> List[DatasetInfo]:
        info = self.dataset(parent) or {}
        return [c for c in info.get('children') or [] if c.get('type') == 'VOLUME']

    def service(self, name: str = 'iscsitarget') -> Optional[ServiceInfo]:
        result = self.dispatcher.call(
            'service.query', [[['service', '=', name]]],
            RestRoute('GET', 'service', params={'service': name}),
        )
        if isinstance(result, list):
            return result[0] if result else None
        return result

    def snapshots(self, dataset: str) -> List[SnapshotInfo]:
        result = self.dispatcher.call(
            'zfs.snapshot.query', [[['dataset', '=', dataset]]],
            RestRoute('GET', 'zfs/snapshot', params={'dataset': dataset}),
        ) or []
        # Older REST builds ignore the filter
        return [s for s in result if s.get('dataset', str(s.get('name', '')).split('@')[0]) == dataset]

    def find_extent(self, name: str, fresh: bool = False) -> Optional[ExtentInfo]:
        return next((e for e in self.extents(fresh) if e.get('name') == name), None)

    def target_mappings(self, target_id: int, fresh: bool = False) -> List[TargetExtentInfo]:
        return [m for m in self.mappings(fresh) if m.get('target') == target_id]

    # ------------------------------------------------------------------
    # Volume mutations

    def create_volume(self, request: VolumeCreateRequest) -> DatasetInfo:
        payload = request.to_payload()
        try:
            return self.dispatcher.call('pool.dataset.create', [payload],
                                        RestRoute('POST', 'pool/dataset', payload))
        finally:
            self.invalidate(*ALL_KEYS)

    def delete_dataset(self, name: str, recursive: bool = True) -> bool:
        """
        Delete a dataset or zvol.

        Returns:
            True if it was deleted, False if it was already absent
        """
        options = {'recursive': recursive}
        try:
            result = self.dispatcher.call(
                'pool.dataset.delete', [name, options],
                RestRoute('DELETE', f"pool/dataset/id/{_quoted(name)}", options),
                not_found_ok=True,
            )
        finally:
            self.invalidate(*ALL_KEYS)
        if result is None:
            return False
        if is_job_id(result):
            self.wait_for_job(result)
        return True

    def resize_volume(self, request: VolumeResizeRequest) -> DatasetInfo:
        payload = request.to_payload()
        return self.dispatcher.call(
            'pool.dataset.update', [request.name, payload],
            RestRoute('PUT', f"pool/dataset/id/{_quoted(request.name)}", payload),
        )

    # ------------------------------------------------------------------
    # Extent and mapping mutations

    def create_extent(self, request: ExtentCreateRequest) -> ExtentInfo:
        payload = request.to_payload()
        try:
            return self.dispatcher.call('iscsi.extent.create', [payload],
                                        RestRoute('POST', 'iscsi/extent', payload))
        finally:
            self.invalidate(EXTENTS, MAPPINGS)

    def delete_extent(self, extent_id: int) -> bool:
        try:
            result = self.dispatcher.call(
                'iscsi.extent.delete', [extent_id],
                RestRoute('DELETE', f"iscsi/extent/id/{extent_id}"),
                not_found_ok=True,
            )
        finally:
            self.invalidate(EXTENTS, MAPPINGS)
        return result is not None

    def create_mapping(self, request: MappingCreateRequest) -> TargetExtentInfo:
        payload = request.to_payload()
        try:
            return self.dispatcher.call('iscsi.targetextent.create', [payload],
                                        RestRoute('POST', 'iscsi/targetextent', payload))
        finally:
            self.invalidate(MAPPINGS)

    def delete_mapping(self, mapping_id: int) -> bool:
        try:
            result = self.dispatcher.call(
                'iscsi.targetextent.delete', [mapping_id],
                RestRoute('DELETE', f"iscsi/targetextent/id/{mapping_id}"),
                not_found_ok=True,
            )
        finally:
            self.invalidate(MAPPINGS)
        return result is not None

    # ------------------------------------------------------------------
    # Snapshots

    def create_snapshot(self, request: SnapshotCreateRequest) -> SnapshotInfo:
        payload = request.to_payload()
        return self.dispatcher.call('zfs.snapshot.create', [payload],
                                    RestRoute('POST', 'zfs/snapshot', payload))

    def delete_snapshot(self, full_name: str) -> bool:
        result = self.dispatcher.call(
            'zfs.snapshot.delete', [full_name],
            RestRoute('DELETE', f"zfs/snapshot/id/{_quoted(full_name)}"),
            not_found_ok=True,
        )
        if is_job_id(result):
            self.wait_for_job(result)
        return result is not None

    def rollback_snapshot(self, full_name: str, force: bool = True, recursive: bool = False) -> None:
        """
        Roll a volume back to full_name.

        Only available over the WebSocket API. When newer snapshots exist and
        force is set, the rollback is repeated recursively, destroying them.
        """
        options = {'force': force, 'recursive': recursive}
        try:
            self.dispatcher.call('zfs.snapshot.rollback', [full_name, options])
        except RemoteCallError as e:
            if ROLLBACK_NEEDS_RECURSIVE not in str(e):
                raise
            if not force or recursive:
                raise ValidationError(
                    f"Cannot roll back to {full_name}: newer snapshots exist",
                    "delete the newer snapshots first or roll back with force",
                    snapshot=full_name,
                ) from e
            logger.warning(f"Newer snapshots exist after {full_name}; rolling back recursively")
            self.dispatcher.call('zfs.snapshot.rollback', [full_name, options | {'recursive': True}])

    def clone_snapshot(self, request: CloneRequest) -> Any:
        payload = request.to_payload()
        try:
            return self.dispatcher.call('zfs.snapshot.clone', [payload],
                                        RestRoute('POST', 'zfs/snapshot/clone', payload))
        finally:
            self.invalidate(*ALL_KEYS)

    # ------------------------------------------------------------------
    # Jobs and targets

    def wait_for_job(self, job_id: int, timeout: Optional[float] = None) -> JobInfo:
        """
        Poll core.get_jobs until job_id finishes.

        Raises:
            RemoteCallError: the job failed
            TransientNetworkError: the job did not finish within timeout
        """
        timeout = self.job_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        logger.info(f"Waiting for job {job_id} to complete (timeout: {timeout:.0f}s)")

        while True:
            jobs = self.dispatcher.call(
                'core.get_jobs', [[['id', '=', job_id]]],
                RestRoute('GET', 'core/get_jobs', params={'id': job_id}),
            ) or []
            job: JobInfo = jobs[0] if jobs else {}
            state = job.get('state', 'UNKNOWN')
            if state == 'SUCCESS':
                logger.info(f"Job {job_id} completed successfully")
                return job
            if state in ('FAILED', 'ABORTED'):
                error = job.get('error') or job.get('exc_info') or 'Unknown error'
                raise RemoteCallError(f"Job {job_id} ({job.get('method', '?')}) failed: {error}",
                                      method=job.get('method'))
            if self._clock() >= deadline:
                raise TransientNetworkError(f"Job {job_id} did not finish within {timeout:.0f}s (state {state})")
            self._sleep(1.0)

    def resolve_target(self, want: str) -> TargetInfo:
        """
        Find the target for an IQN or short name.

        Tries an exact 'iqn' match, then '<basename>:<name>', then a match on
        the short name at the end of want.
        """
        targets = self.targets()
        if not targets:
            basename = self._basename()
            portal = self.discovery_portal or '(none)'
            raise ValidationError(
                "\n".join([
                    "TrueNAS API returned no iSCSI targets.",
                    f"  iSCSI base name: {basename or '(unknown)'}",
                    f"  Configured discovery portal: {portal}",
                    "",
                    "Next steps:",
                    "  1) On TrueNAS, ensure the iSCSI service is RUNNING.",
                    f"  2) Under Shares > Block (iSCSI) > Portals, listen on {portal} (or 0.0.0.0:3260).",
                    "  3) From this host, run:",
                    f"     iscsiadm -m discovery -t sendtargets -p {portal}",
                ]),
                target=want,
            )

        basename = self._basename()
        for target in targets:
            if target.get('iqn') and target['iqn'] == want:
                return target
        for target in targets:
            name = target.get('name') or ''
            if basename and name and f"{basename}:{name}" == want:
                return target
        for target in targets:
            name = target.get('name') or ''
            if name and (want == name or want.endswith(f":{name}")):
                return target

        available = [
            target.get('iqn') or (f"{basename}:{target.get('name')}" if basename else target.get('name'))
            for target in targets
        ]
        raise ValidationError(
            f"Could not resolve target {want!r} ({len(targets)} target(s) on the appliance)",
            f"available targets: {', '.join(str(a) for a in available)}",
            target=want,
            available=available,
        )

    def _basename(self) -> str:
        try:
            return self.global_config().get('basename') or ''
        except TrueNASError as e:
            logger.warning(f"Could not read iSCSI base name: {e}")
            return ''
