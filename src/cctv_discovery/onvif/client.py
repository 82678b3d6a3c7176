"""
ONVIF client: WS-Discovery multicast probe and authenticated device queries
"""

import asyncio
import ssl
import logging
from typing import Callable, List, Optional

import aiohttp

from ..discovery.models import Credential, Device
from ..http_helper import create_onvif_session, create_trust_all_ssl_context
from ..transport import open_multicast_socket, receive_datagrams
from . import messages

logger = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = "application/soap+xml; charset=utf-8"
DEVICE_SERVICE_PATH = "/onvif/device_service"
HTTPS_PORTS = (443, 8443)


def build_service_url(ip: str, port: int) -> str:
    scheme = "https" if port in HTTPS_PORTS else "http"
    return f"{scheme}://{ip}:{port}{DEVICE_SERVICE_PATH}"


class OnvifClient:
    """WS-Discovery and ONVIF device service calls"""

    def __init__(self, config: dict, session_factory: Callable[..., aiohttp.ClientSession] = create_onvif_session):
        self.config = config
        self.multicast_address = config.get('multicast_address', '239.255.255.250')
        self.port = config.get('port', 3702)
        self.discovery_timeout = config.get('discovery_timeout', 5.0)
        self.connect_timeout = config.get('connect_timeout', 5.0)
        self.request_timeout = config.get('request_timeout', 10.0)
        self.session_factory = session_factory
        # Built once, used only by this client's sessions
        self.ssl_context: ssl.SSLContext = create_trust_all_ssl_context()

    def discover_devices(self) -> List[Device]:
        """Send one probe and collect answers for the listen window (blocking)"""
        devices: List[Device] = []
        seen = set()
        probe = messages.build_probe().encode('utf-8')

        try:
            sock = open_multicast_socket()
        except OSError as e:
            logger.error(f"WS-Discovery socket setup failed: {e}")
            return devices

        try:
            logger.info(f"[SEARCH] Sending WS-Discovery probe to {self.multicast_address}:{self.port}")
            sock.sendto(probe, (self.multicast_address, self.port))
            for data, addr in receive_datagrams(sock, self.discovery_timeout):
                match = messages.parse_probe_match(data)
                if match is None:
                    continue
                ip = match.ip or addr[0]
                if ip in seen:
                    continue
                seen.add(ip)
                devices.append(Device(
                    ip=ip,
                    mac=match.mac,
                    onvif_service_url=match.service_url,
                    discovery_method="ws_discovery"
                ))
                logger.info(f"[PASS] Found ONVIF device via multicast: {ip} ({match.service_url})")
        except OSError as e:
            logger.error(f"WS-Discovery failed: {e}")
        finally:
            sock.close()

        logger.info(f"WS-Discovery complete: {len(devices)} devices")
        return devices

    async def _post(self, service_url: str, body: str, credential: Optional[Credential]) -> Optional[str]:
        """POST one SOAP request; None on any transport failure or non-200"""
        payload = messages.build_device_request(body, credential)
        try:
            async with self.session_factory(self.ssl_context, self.connect_timeout,
                                            self.request_timeout) as session:
                async with session.post(service_url, data=payload.encode('utf-8'),
                                        headers={'Content-Type': SOAP_CONTENT_TYPE}) as response:
                    if response.status != 200:
                        logger.debug(f"ONVIF {service_url} returned HTTP {response.status}")
                        return None
                    return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError, ssl.SSLError, OSError) as e:
            logger.debug(f"ONVIF request to {service_url} failed: {e}")
            return None

    async def get_device_information(self, device: Device, credential: Credential,
                                     service_url: Optional[str] = None) -> bool:
        """Authenticate with GetDeviceInformation and fill identity fields"""
        service_url = service_url or device.onvif_service_url
        if not service_url:
            return False

        xml_text = await self._post(service_url, messages.get_device_information_body(), credential)
        info = messages.parse_device_information(xml_text) if xml_text else None
        if not info:
            return False

        device.onvif_service_url = service_url
        device.manufacturer = info.get('manufacturer') or device.manufacturer
        device.model = info.get('model') or device.model
        device.serial_number = info.get('serial_number') or device.serial_number
        device.firmware_version = info.get('firmware_version') or device.firmware_version
        logger.info(f"[AUTH] ONVIF login OK for {device.ip} as {credential.username}: "
                    f"{device.manufacturer} {device.model}")

        hostname = await self.get_hostname(device, credential)
        if hostname:
            device.hostname = hostname
        if not device.mac:
            device.mac = await self.get_network_mac(device, credential)
        return True

    async def discover_device_by_port(self, device: Device, port: int, credential: Credential) -> bool:
        """For port-scanned devices: try the conventional device service URL on a web port"""
        return await self.get_device_information(device, credential, build_service_url(device.ip, port))

    async def get_video_sources(self, device: Device, credential: Credential) -> List[str]:
        if not device.onvif_service_url:
            return []
        xml_text = await self._post(device.onvif_service_url, messages.get_video_sources_body(), credential)
        return messages.parse_video_sources(xml_text) if xml_text else []

    async def get_hostname(self, device: Device, credential: Credential) -> Optional[str]:
        xml_text = await self._post(device.onvif_service_url, messages.get_hostname_body(), credential)
        return messages.parse_hostname(xml_text) if xml_text else None

    async def get_network_mac(self, device: Device, credential: Credential) -> Optional[str]:
        xml_text = await self._post(device.onvif_service_url, messages.get_network_interfaces_body(), credential)
        return messages.parse_network_mac(xml_text) if xml_text else None
