#!/usr/bin/env python3
"""
Pre-flight validation for volume provisioning.

Runs every check before any resource is created and reports all failures
together, so an operator sees each blocking condition at once.
"""

import logging
from typing import Callable, List, Optional, Tuple

from truenas_block.api import TrueNASClient
from truenas_block.api_types import ProvisionRequest
from truenas_block.base_component import BaseComponent
from truenas_block.config import StorageConfig
from truenas_block.errors import PreflightError, PreflightFailure, TrueNASError, ValidationError
from truenas_block.helpers import format_gib, prop_bytes


def required_space(size: int, overhead_percent: int) -> int:
    """size inflated by overhead_percent, rounded up to a whole byte."""
    return -(-size * (100 + overhead_percent) // 100)


class PreflightValidator(BaseComponent):
    """
    Checks reachability, iSCSI service state, free space, target and parent
    dataset for a ProvisionRequest.
    """

    def __init__(self, client: TrueNASClient, config: StorageConfig,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(config, logger)
        self.client = client
        self.parent: str = self.config['dataset']
        self.overhead: int = self.config.get('space_overhead_percent', 20)

    def validate(self, request: ProvisionRequest) -> List[PreflightFailure]:
        """
        Run all checks.

        Returns:
            Every failed check; an empty list means provisioning may proceed
        """
        checks: List[Tuple[str, Callable[[], None]]] = [
            ('reachability', self._check_reachability),
            ('iscsi_service', self._check_service),
            ('space', lambda: self._check_space(request.size_bytes)),
            ('target', self._check_target),
            ('parent_dataset', self._check_parent),
        ]

        failures: List[PreflightFailure] = []
        for name, check in checks:
            try:
                check()
            except PreflightFailure as failure:
                failures.append(failure)
            except TrueNASError as e:
                failures.append(PreflightFailure(name, f"{name} check could not complete: {e}"))

        if failures:
            self.logger.warning(f"Pre-flight found {len(failures)} problem(s) for a "
                                f"{format_gib(request.size_bytes)} volume under {self.parent}")
        else:
            self.logger.info(f"Pre-flight passed for a {format_gib(request.size_bytes)} volume under {self.parent}")
        return failures

    def check(self, request: ProvisionRequest) -> None:
        """Raise PreflightError when any check fails."""
        with self.track('preflight', size=request.size_bytes):
            if failures := self.validate(request):
                raise PreflightError(failures)

    def check_space(self, size: int) -> None:
        """Space check alone, used before growing a volume by size bytes."""
        with self.track('preflight_space', size=size):
            try:
                self._check_space(size)
            except PreflightFailure as failure:
                raise PreflightError([failure]) from None

    def _check_reachability(self) -> None:
        try:
            self.client.ping()
        except TrueNASError as e:
            raise PreflightFailure(
                'reachability',
                f"TrueNAS API at {self.config['api_host']} is not reachable: {e}",
                "check api_host, api_port, api_scheme and network connectivity",
            ) from e

    def _check_service(self) -> None:
        service = self.client.service('iscsitarget')
        state = (service or {}).get('state', 'UNKNOWN')
        if state != 'RUNNING':
            raise PreflightFailure(
                'iscsi_service',
                f"iSCSI service is not running (state: {state})",
                "start the iSCSI service on TrueNAS under System > Services",
                state=state,
            )

    def _check_space(self, size: int) -> None:
        info = self.client.dataset(self.parent)
        if info is None:
            raise PreflightFailure(
                'space',
                f"Cannot determine free space: dataset {self.parent} does not exist",
            )

        available = prop_bytes(info.get('available'))
        if available is None:
            raise PreflightFailure('space', f"Dataset {self.parent} does not report available space")

        required = required_space(size, self.overhead)
        if available <= required:
            shortfall = required - available
            raise PreflightFailure(
                'space',
                f"Insufficient space on {self.parent}: requested {format_gib(size)}, "
                f"required {format_gib(required)} including {self.overhead}% overhead, "
                f"available {format_gib(available)}, shortfall {format_gib(shortfall)}",
                "free space on the pool or request a smaller volume",
                requested=size,
                required=required,
                available=available,
                shortfall=shortfall,
            )

    def _check_target(self) -> None:
        try:
            self.client.resolve_target(self.config['target_iqn'])
        except ValidationError as e:
            raise PreflightFailure('target', e.message, e.remediation, **e.details) from e

    def _check_parent(self) -> None:
        info = self.client.dataset(self.parent)
        if info is None:
            raise PreflightFailure(
                'parent_dataset',
                f"Parent dataset {self.parent} does not exist",
                "create it on TrueNAS or fix 'dataset' (expected 'pool/path')",
                dataset=self.parent,
            )
        if info.get('type') == 'VOLUME':
            raise PreflightFailure(
                'parent_dataset',
                f"{self.parent} is a zvol and cannot hold other volumes",
                "point 'dataset' at a filesystem dataset",
                dataset=self.parent,
            )
