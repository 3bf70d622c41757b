"""
Components that act on the appliance and the host: pre-flight validation,
volume provisioning, and iSCSI session/device handling.
"""

from .host import HostSessionResolver
from .provisioner import VolumeProvisioner
from .validator import PreflightValidator

__all__ = ['HostSessionResolver', 'PreflightValidator', 'VolumeProvisioner']
