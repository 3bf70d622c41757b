"""
truenas_block: iSCSI block volumes on TrueNAS

Provisions zvols on a TrueNAS appliance, exports them as iSCSI LUNs and
resolves the resulting block devices on the local host.
"""

from .api_types import ProvisionRequest, VolumeHandle
from .config import StorageConfig, load_config
from .errors import TrueNASError
from .storage import TrueNASBlockStorage

__version__ = '0.1.0'

__all__ = ['ProvisionRequest', 'StorageConfig', 'TrueNASBlockStorage', 'TrueNASError', 'VolumeHandle', 'load_config']
