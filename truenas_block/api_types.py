#!/usr/bin/env python3
"""
Typed request and response structures for the TrueNAS API.

Responses are TypedDicts mirroring what the appliance returns. Requests are
dataclasses that validate themselves on construction, so a malformed payload
never reaches the wire.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict

from truenas_block.errors import ValidationError
from truenas_block.helpers import parse_size, sanitize_name

LUN_MIN = 0
LUN_MAX = 1023

_DATASET_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.:\-]*(/[A-Za-z0-9_.:\-]+)*$')
_LEAF_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.\-]*$')
_SNAPSHOT_RE = re.compile(r'^[A-Za-z0-9_.:\-]+$')
_BLOCKSIZE_RE = re.compile(r'^\d+[KM]?$')
_VOLNAME_RE = re.compile(r'^vol-([A-Za-z0-9_.\-]+)-lun(\d+)$')


class TargetInfo(TypedDict, total=False):
    """TypedDict for iSCSI target information."""
    id: int
    name: str
    alias: Optional[str]
    iqn: str
    mode: str
    groups: List[Dict[str, Any]]


class ExtentInfo(TypedDict, total=False):
    """TypedDict for iSCSI extent information."""
    id: int
    name: str
    type: str
    disk: str
    path: str
    blocksize: int
    insecure_tpc: bool
    enabled: bool


class TargetExtentInfo(TypedDict, total=False):
    """TypedDict for target-extent association."""
    id: int
    target: int
    extent: int
    lunid: int


class GlobalConfig(TypedDict, total=False):
    """TypedDict for the global iSCSI configuration."""
    id: int
    basename: str
    isns_servers: List[str]
    pool_avail_threshold: Optional[int]


class DatasetInfo(TypedDict, total=False):
    """TypedDict for dataset and zvol information."""
    id: str
    name: str
    type: str
    volsize: Any
    volblocksize: Any
    available: Any
    used: Any
    written: Any
    quota: Any
    children: List[Dict[str, Any]]


class ServiceInfo(TypedDict, total=False):
    id: int
    service: str
    state: str
    enable: bool


class SnapshotInfo(TypedDict, total=False):
    id: str
    name: str
    dataset: str
    snapshot_name: str
    properties: Dict[str, Any]


class JobInfo(TypedDict, total=False):
    id: int
    method: str
    state: str
    error: Optional[str]
    result: Any


def _require(condition: bool, message: str, remediation: Optional[str] = None, **details: Any) -> None:
    if not condition:
        raise ValidationError(message, remediation, **details)


def check_dataset_name(name: str) -> str:
    _require(bool(name) and bool(_DATASET_RE.match(name)),
             f"Invalid dataset name: {name!r}",
             "expected 'pool/path/leaf' using letters, digits, '_', '-', '.', ':'",
             name=name)
    return name


def volume_leaf(name: str, vmid: Optional[int] = None) -> str:
    """
    Sanitised leaf for an explicit volume name, prefixed with vm-<vmid>- when
    vmid is known.

    Raises:
        ValidationError: the result is not a usable extent and dataset leaf
    """
    leaf = sanitize_name(name)
    if vmid is not None and not leaf.startswith(f"vm-{vmid}-"):
        leaf = f"vm-{vmid}-{leaf}"
    _require(bool(_LEAF_RE.match(leaf)),
             f"Invalid volume name: {name!r}",
             "names must start with a letter or digit and use letters, digits, '_', '-', '.'",
             name=name)
    return leaf


def check_lun(lun: int) -> int:
    _require(isinstance(lun, int) and not isinstance(lun, bool) and LUN_MIN <= lun <= LUN_MAX,
             f"LUN {lun!r} is out of range",
             f"expected an integer between {LUN_MIN} and {LUN_MAX}",
             lun=lun)
    return lun


@dataclass(frozen=True)
class VolumeCreateRequest:
    """pool.dataset.create payload for a zvol."""
    name: str
    volsize: int
    sparse: bool = True
    volblocksize: Optional[str] = None

    def __post_init__(self) -> None:
        check_dataset_name(self.name)
        _require('/' in self.name, f"Volume {self.name!r} must live below a parent dataset",
                 "use 'pool/parent/leaf'")
        _require(isinstance(self.volsize, int) and self.volsize > 0,
                 f"Volume size must be a positive number of bytes, got {self.volsize!r}")
        if self.volblocksize is not None:
            _require(bool(_BLOCKSIZE_RE.match(self.volblocksize)),
                     f"Invalid volblocksize {self.volblocksize!r}", "expected e.g. '16K'")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            'name': self.name,
            'type': 'VOLUME',
            'volsize': self.volsize,
            'sparse': self.sparse,
        }
        if self.volblocksize:
            payload['volblocksize'] = self.volblocksize
        return payload


@dataclass(frozen=True)
class VolumeResizeRequest:
    """pool.dataset.update payload changing volsize."""
    name: str
    volsize: int

    def __post_init__(self) -> None:
        check_dataset_name(self.name)
        _require(isinstance(self.volsize, int) and self.volsize > 0,
                 f"Volume size must be a positive number of bytes, got {self.volsize!r}")

    def to_payload(self) -> Dict[str, Any]:
        return {'volsize': self.volsize}


@dataclass(frozen=True)
class ExtentCreateRequest:
    """iscsi.extent.create payload for a zvol-backed extent."""
    name: str
    dataset: str
    insecure_tpc: bool = True

    def __post_init__(self) -> None:
        _require(bool(self.name) and bool(_LEAF_RE.match(self.name)),
                 f"Invalid extent name: {self.name!r}")
        check_dataset_name(self.dataset)

    @property
    def disk(self) -> str:
        return f"zvol/{self.dataset}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': 'DISK',
            'disk': self.disk,
            'insecure_tpc': self.insecure_tpc,
        }


@dataclass(frozen=True)
class MappingCreateRequest:
    """iscsi.targetextent.create payload."""
    target: int
    extent: int
    lunid: int

    def __post_init__(self) -> None:
        _require(isinstance(self.target, int) and self.target >= 0, f"Invalid target id {self.target!r}")
        _require(isinstance(self.extent, int) and self.extent >= 0, f"Invalid extent id {self.extent!r}")
        check_lun(self.lunid)

    def to_payload(self) -> Dict[str, Any]:
        return {'target': self.target, 'extent': self.extent, 'lunid': self.lunid}


@dataclass(frozen=True)
class SnapshotCreateRequest:
    dataset: str
    name: str
    recursive: bool = False

    def __post_init__(self) -> None:
        check_dataset_name(self.dataset)
        _require(bool(self.name) and bool(_SNAPSHOT_RE.match(self.name)),
                 f"Invalid snapshot name: {self.name!r}",
                 "use letters, digits, '_', '-', '.', ':'")

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    def to_payload(self) -> Dict[str, Any]:
        return {'dataset': self.dataset, 'name': self.name, 'recursive': self.recursive}


@dataclass(frozen=True)
class CloneRequest:
    snapshot: str
    dataset_dst: str

    def __post_init__(self) -> None:
        _require('@' in self.snapshot, f"Invalid snapshot reference {self.snapshot!r}",
                 "expected 'pool/path/volume@snapshot'")
        check_dataset_name(self.snapshot.split('@', 1)[0])
        check_dataset_name(self.dataset_dst)

    def to_payload(self) -> Dict[str, Any]:
        return {'snapshot': self.snapshot, 'dataset_dst': self.dataset_dst}


@dataclass(frozen=True)
class ProvisionRequest:
    """
    Inputs for one create_volume call.

    size accepts bytes or strings such as '32G'. When name is empty a
    'vm-<vmid>-disk-<n>' name is picked from the free slots under the parent
    dataset.
    """
    size: int | str
    vmid: Optional[int] = None
    name: Optional[str] = None
    blocksize: Optional[str] = None
    sparse: Optional[bool] = None
    size_bytes: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        try:
            size_bytes = parse_size(self.size)
        except ValueError as e:
            raise ValidationError(str(e), "use bytes or a value such as '32G'") from None
        _require(size_bytes > 0, f"Requested size must be positive, got {self.size!r}")
        object.__setattr__(self, 'size_bytes', size_bytes)
        if self.name is not None:
            _require(bool(self.name.strip()), "Volume name must not be blank")
            volume_leaf(self.name, self.vmid)
        if self.blocksize is not None:
            _require(bool(_BLOCKSIZE_RE.match(str(self.blocksize).upper())),
                     f"Invalid block size {self.blocksize!r}", "expected e.g. '16K'")

    def leaf_name(self) -> Optional[str]:
        """Sanitised explicit leaf, prefixed with vm-<vmid>- when vmid is known."""
        if not self.name:
            return None
        return volume_leaf(self.name, self.vmid)


@dataclass(frozen=True)
class VolumeHandle:
    """
    Externally visible volume identity: the extent name plus its LUN.

    Rendered as 'vol-<name>-lun<N>'; parse() reverses it.
    """
    name: str
    lun: int

    def __post_init__(self) -> None:
        _require(bool(self.name) and bool(_LEAF_RE.match(self.name)), f"Invalid volume name {self.name!r}")
        check_lun(self.lun)

    @property
    def volname(self) -> str:
        return f"vol-{self.name}-lun{self.lun}"

    @property
    def vmid(self) -> Optional[int]:
        if m := re.match(r'^vm-(\d+)-', self.name):
            return int(m.group(1))
        return None

    def dataset(self, parent: str) -> str:
        return f"{parent}/{self.name}"

    @classmethod
    def parse(cls, volname: str) -> 'VolumeHandle':
        m = _VOLNAME_RE.match(volname or '')
        if not m:
            raise ValidationError(f"Unrecognized volume name {volname!r}",
                                  "expected 'vol-<name>-lun<N>'")
        return cls(m.group(1), int(m.group(2)))

    def __str__(self) -> str:
        return self.volname
