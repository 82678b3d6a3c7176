"""
Network scanning for camera and recorder devices
"""

import os
import re
import shutil
import subprocess
import threading
import ipaddress
import logging
from enum import Enum
from concurrent.futures import as_completed
from typing import Callable, Dict, List, Optional

from .models import Device, normalize_mac
from ..transport import is_port_open
from ..workers import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_PORTS = [80, 8080, 554, 8554, 443, 8443, 8000, 8888, 37777, 34567]
NVR_SIGNAL_PORTS = (8000, 37777)

ProgressCallback = Callable[[int, int], None]


class PortRole(Enum):
    ONVIF = "onvif"      # web management / ONVIF device service
    RTSP = "rtsp"
    OTHER = "other"      # vendor SDK / signalling


PORT_ROLES: Dict[int, PortRole] = {
    80: PortRole.ONVIF,
    8080: PortRole.ONVIF,
    443: PortRole.ONVIF,
    8443: PortRole.ONVIF,
    554: PortRole.RTSP,
    8554: PortRole.RTSP,
    8888: PortRole.RTSP,
}


def classify_port(port: int) -> PortRole:
    return PORT_ROLES.get(port, PortRole.OTHER)


def generate_ip_list(ip_ranges: List[str]) -> List[str]:
    """Expand 'a.b.c.d-a.b.c.e', 'a.b.c.d-e' and CIDR entries into host addresses"""
    all_ips = []
    for ip_range in ip_ranges:
        ip_range = str(ip_range).strip()
        try:
            if '-' in ip_range:
                start_ip, end_ip = [part.strip() for part in ip_range.split('-', 1)]
                if '.' not in end_ip:
                    end_ip = start_ip.rsplit('.', 1)[0] + '.' + end_ip
                start = ipaddress.IPv4Address(start_ip)
                end = ipaddress.IPv4Address(end_ip)
                current = start
                while current <= end:
                    all_ips.append(str(current))
                    current += 1
            elif '/' in ip_range:
                network = ipaddress.IPv4Network(ip_range, strict=False)
                all_ips.extend(str(ip) for ip in network.hosts())
            else:
                all_ips.append(str(ipaddress.IPv4Address(ip_range)))
        except ValueError:
            logger.warning(f"Invalid IP range: {ip_range}")
    return all_ips


def _mac_from_proc(ip: str) -> Optional[str]:
    try:
        with open('/proc/net/arp', 'r') as f:
            for line in f.readlines()[1:]:
                fields = line.split()
                if len(fields) >= 4 and fields[0] == ip:
                    return normalize_mac(fields[3])
    except OSError:
        pass
    return None


def resolve_mac_address(ip: str, timeout: float = 2.0) -> Optional[str]:
    """Best-effort MAC lookup from the ARP table (only works on the local segment)"""
    mac = _mac_from_proc(ip) if os.path.exists('/proc/net/arp') else None
    if mac:
        return mac

    arp = shutil.which('arp')
    if not arp:
        return None
    args = [arp, '-a', ip] if os.name == 'nt' else [arp, '-n', ip]
    try:
        output = subprocess.run(args, capture_output=True, text=True, timeout=timeout).stdout
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"ARP lookup failed for {ip}: {e}")
        return None
    match = re.search(r'([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}', output)
    return normalize_mac(match.group(0)) if match else None


def merge_device_lists(multicast_devices: List[Device], scanned_devices: List[Device]) -> List[Device]:
    """
    Combine multicast and scan results by IP.
    Multicast entries keep their identity fields; scans only contribute missing ports.
    """
    merged = list(multicast_devices)
    by_ip = {device.ip: device for device in merged}

    for scanned in scanned_devices:
        existing = by_ip.get(scanned.ip)
        if existing is None:
            merged.append(scanned)
            by_ip[scanned.ip] = scanned
            continue
        for port in scanned.onvif_ports:
            if port not in existing.onvif_ports:
                existing.onvif_ports.append(port)
        for port in scanned.rtsp_ports:
            if port not in existing.rtsp_ports:
                existing.rtsp_ports.append(port)
        for port in scanned.other_ports:
            if port not in existing.other_ports:
                existing.other_ports.append(port)
        existing.is_nvr = existing.is_nvr or scanned.is_nvr
        if not existing.mac and scanned.mac:
            existing.mac = scanned.mac
        if not existing.manufacturer and scanned.manufacturer:
            existing.manufacturer = scanned.manufacturer

    return merged


class NetworkScanner:
    """Concurrent TCP port scanning over an IP set"""

    def __init__(self, config: dict, probe: Callable[[str, int, float], bool] = is_port_open,
                 mac_resolver: Optional[Callable[[str], Optional[str]]] = resolve_mac_address,
                 vendor_lookup: Optional[Callable[[str], Optional[str]]] = None):
        self.config = config
        self.ports = list(config.get('ports', DEFAULT_PORTS))
        self.connect_timeout = config.get('connect_timeout', 2.0)
        multiplier = config.get('scan_thread_multiplier', 8)
        max_threads = config.get('scan_max_threads', 64)
        self.max_workers = max(1, min((os.cpu_count() or 1) * multiplier, max_threads))
        self.probe = probe
        self.mac_resolver = mac_resolver if config.get('resolve_mac', True) else None
        self.vendor_lookup = vendor_lookup
        self._cancelled = threading.Event()
        self._pool: Optional[WorkerPool] = None

    def cancel(self) -> None:
        """Stop starting new IPs; in-flight probes finish on their own timeout"""
        self._cancelled.set()

    def reset(self) -> None:
        """Re-arm after a cancelled run"""
        self._cancelled.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def resolve_mac(self, ip: str) -> Optional[str]:
        if not self.mac_resolver:
            return None
        return self.mac_resolver(ip)

    def scan_device(self, ip: str) -> Optional[Device]:
        """Probe every port on one IP; None if nothing answered or the scan was cancelled"""
        if self._cancelled.is_set():
            return None
        open_ports = [port for port in self.ports if self.probe(ip, port, self.connect_timeout)]
        if not open_ports:
            return None

        device = Device(ip=ip, discovery_method="tcp_scan")
        for port in open_ports:
            role = classify_port(port)
            if role == PortRole.ONVIF:
                device.onvif_ports.append(port)
            elif role == PortRole.RTSP:
                device.rtsp_ports.append(port)
            else:
                device.other_ports.append(port)
        device.is_nvr = any(port in NVR_SIGNAL_PORTS for port in open_ports)

        device.mac = self.resolve_mac(ip)
        if self.vendor_lookup and device.mac and not device.manufacturer:
            device.manufacturer = self.vendor_lookup(device.mac)

        logger.info(f"[PASS] Found device via TCP: {ip} ports={open_ports}"
                    f"{' (NVR/DVR)' if device.is_nvr else ''}")
        return device

    def scan(self, ip_list: List[str], progress_callback: Optional[ProgressCallback] = None) -> List[Device]:
        """Scan all IPs with a bounded pool; results keep the input IP order"""
        total = len(ip_list)
        logger.info(f"[SEARCH] Scanning {total} IPs on {len(self.ports)} ports "
                    f"with {self.max_workers} workers")

        found: Dict[str, Device] = {}
        completed = 0
        self._pool = WorkerPool("port-scan", self.max_workers)
        try:
            futures = {self._pool.submit(self.scan_device, ip): ip for ip in ip_list}
            for future in as_completed(futures):
                ip = futures[future]
                try:
                    device = future.result()
                except Exception as e:
                    logger.warning(f"Scan of {ip} failed: {e}")
                    device = None
                if device:
                    found[ip] = device
                completed += 1
                if progress_callback:
                    progress_callback(completed, total)
        finally:
            self._pool.shutdown(timeout=self.connect_timeout * 2)
            self._pool = None

        devices = [found[ip] for ip in ip_list if ip in found]
        logger.info(f"TCP scan complete: {len(devices)} devices with open ports"
                    f"{' (cancelled)' if self.cancelled else ''}")
        return devices
