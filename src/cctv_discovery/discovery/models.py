"""
Discovery data structures and models
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """Return MAC as upper-case colon separated octets, or None if it is not a MAC"""
    if not mac:
        return None
    digits = re.sub(r'[^0-9A-Fa-f]', '', mac)
    if len(digits) != 12:
        return None
    digits = digits.upper()
    return ':'.join(digits[i:i + 2] for i in range(0, 12, 2))


def mac_prefix(mac: Optional[str]) -> Optional[str]:
    """First three octets of a MAC (vendor OUI), e.g. 'C0:56:E3'"""
    normalized = normalize_mac(mac)
    if not normalized:
        return None
    return normalized[:8]


class DeviceStatus(Enum):
    PENDING = "Pending"
    AUTHENTICATING = "Authenticating"
    COMPLETED = "Completed"
    AUTH_FAILED = "AuthFailed"


@dataclass(frozen=True)
class Credential:
    """Username/password pair tried against a device"""
    username: str
    password: str = field(repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Credential':
        return cls(str(data.get('username', '')), str(data.get('password', '')))


@dataclass
class Stream:
    """A confirmed media stream on a device"""
    name: str
    url: str
    channel: Optional[int] = None
    session_name: Optional[str] = None
    resolution: Optional[str] = None  # "WxH"
    codec: Optional[str] = None
    bitrate_kbps: Optional[int] = None
    fps: Optional[float] = None
    profile: Optional[str] = None
    compliance_issues: List[str] = field(default_factory=list)

    @property
    def is_sub_stream(self) -> bool:
        return 'sub' in self.name.lower()

    @property
    def compliant(self) -> bool:
        return not self.compliance_issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'url': self.url,
            'channel': self.channel,
            'resolution': self.resolution,
            'codec': self.codec,
            'bitrate_kbps': self.bitrate_kbps,
            'fps': self.fps,
            'profile': self.profile,
            'compliance_issues': list(self.compliance_issues),
        }


@dataclass
class Device:
    """Represents a discovered camera, NVR or DVR"""
    ip: str
    mac: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    hostname: Optional[str] = None
    onvif_service_url: Optional[str] = None
    discovery_method: str = "tcp_scan"  # "ws_discovery", "tcp_scan"
    onvif_ports: List[int] = field(default_factory=list)
    rtsp_ports: List[int] = field(default_factory=list)
    other_ports: List[int] = field(default_factory=list)
    is_nvr: bool = False
    credential: Optional[Credential] = None
    streams: List[Stream] = field(default_factory=list)
    status: DeviceStatus = DeviceStatus.PENDING
    error: Optional[str] = None
    auth_failed: bool = False

    def __post_init__(self):
        self.mac = normalize_mac(self.mac)

    @property
    def mac_prefix(self) -> Optional[str]:
        return mac_prefix(self.mac)

    @property
    def open_ports(self) -> List[int]:
        return sorted(set(self.onvif_ports) | set(self.rtsp_ports) | set(self.other_ports))

    def set_credential(self, credential: Credential) -> None:
        """Record a credential that just authenticated successfully"""
        self.credential = credential

    def add_streams(self, streams: List[Stream]) -> None:
        self.streams.extend(streams)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ip': self.ip,
            'mac': self.mac,
            'manufacturer': self.manufacturer,
            'model': self.model,
            'serial_number': self.serial_number,
            'firmware_version': self.firmware_version,
            'hostname': self.hostname,
            'onvif_service_url': self.onvif_service_url,
            'discovery_method': self.discovery_method,
            'onvif_ports': list(self.onvif_ports),
            'rtsp_ports': list(self.rtsp_ports),
            'other_ports': list(self.other_ports),
            'is_nvr': self.is_nvr,
            'username': self.credential.username if self.credential else None,
            'streams': [stream.to_dict() for stream in self.streams],
            'status': self.status.value,
            'error': self.error,
            'auth_failed': self.auth_failed,
        }


@dataclass
class DiscoveryResult:
    """Results from a discovery run"""
    devices: List[Device]
    method: str
    duration_seconds: float
    devices_tested: int
    success_count: int
