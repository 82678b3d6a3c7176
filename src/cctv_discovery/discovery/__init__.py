"""
Discovery module for camera, NVR and DVR devices

Only the data models are re-exported here; scanner and manager import the
protocol modules, which themselves depend on the models.
"""

from .models import Credential, Device, DeviceStatus, DiscoveryResult, Stream, mac_prefix, normalize_mac

__all__ = ['Credential', 'Device', 'DeviceStatus', 'DiscoveryResult', 'Stream', 'mac_prefix', 'normalize_mac']
