"""
ONVIF / WS-Discovery SOAP envelopes
Pure builders and parsers, no I/O
"""

import re
import uuid
import logging
import ipaddress
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional
from dataclasses import dataclass
from urllib.parse import urlsplit

from ..auth import ws_security_header
from ..discovery.models import Credential, normalize_mac

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://www.w3.org/2003/05/soap-envelope"
WSA_NS = "http://schemas.xmlsoap.org/ws/2004/08/addressing"
WSD_NS = "http://schemas.xmlsoap.org/ws/2005/04/discovery"
WSDP_NS = "http://schemas.xmlsoap.org/ws/2006/02/devprof"
TDS_NS = "http://www.onvif.org/ver10/device/wsdl"
TRT_NS = "http://www.onvif.org/ver10/media/wsdl"

PROBE_ACTION = "http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe"
PROBE_TO = "urn:schemas-xmlsoap-org:ws:2005:04:discovery"
PROBE_TYPES = "wsdp:Device"


@dataclass
class ProbeMatch:
    """One device answer to a WS-Discovery probe"""
    service_url: str
    ip: Optional[str] = None
    endpoint: Optional[str] = None
    mac: Optional[str] = None


def build_probe(message_id: Optional[str] = None) -> str:
    message_id = message_id or f"uuid:{uuid.uuid4()}"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENV_NS}" xmlns:wsa="{WSA_NS}" '
        f'xmlns:wsd="{WSD_NS}" xmlns:wsdp="{WSDP_NS}">'
        '<s:Header>'
        f'<wsa:Action>{PROBE_ACTION}</wsa:Action>'
        f'<wsa:MessageID>{message_id}</wsa:MessageID>'
        f'<wsa:To>{PROBE_TO}</wsa:To>'
        '</s:Header>'
        '<s:Body>'
        '<wsd:Probe>'
        f'<wsd:Types>{PROBE_TYPES}</wsd:Types>'
        '</wsd:Probe>'
        '</s:Body>'
        '</s:Envelope>'
    )


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _find(root: ET.Element, name: str) -> Optional[ET.Element]:
    """First descendant with the given local name, any namespace"""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return element
    return None


def _find_all(root: ET.Element, name: str) -> List[ET.Element]:
    return [e for e in root.iter() if _local_name(e.tag) == name]


def _text(root: ET.Element, name: str) -> Optional[str]:
    element = _find(root, name)
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _parse(xml_text) -> Optional[ET.Element]:
    try:
        return ET.fromstring(xml_text)
    except ET.ParseError as e:
        logger.debug(f"Discarding malformed XML: {e}")
        return None


def mac_from_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """Best effort MAC from the trailing 12 hex digits of an endpoint UUID"""
    if not endpoint:
        return None
    digits = re.sub(r'[^0-9A-Fa-f]', '', endpoint.rsplit('-', 1)[-1])
    if len(digits) < 12:
        return None
    digits = digits[-12:]
    if int(digits, 16) == 0:
        return None
    return normalize_mac(digits)


def _ip_from_url(url: str) -> Optional[str]:
    host = urlsplit(url).hostname
    if not host:
        return None
    try:
        return str(ipaddress.IPv4Address(host))
    except ValueError:
        return None


def parse_probe_match(xml_text) -> Optional[ProbeMatch]:
    """Parse a ProbeMatches datagram; None if it is not one"""
    root = _parse(xml_text)
    if root is None:
        return None
    match = _find(root, 'ProbeMatch')
    if match is None:
        return None
    xaddrs = _text(match, 'XAddrs')
    if not xaddrs:
        return None

    service_url = xaddrs.split()[0]
    endpoint = _text(match, 'Address')
    return ProbeMatch(
        service_url=service_url,
        ip=_ip_from_url(service_url),
        endpoint=endpoint,
        mac=mac_from_endpoint(endpoint),
    )


def build_device_request(body: str, credential: Optional[Credential] = None) -> str:
    """SOAP 1.2 envelope with a fresh WS-Security token when a credential is given"""
    header = ""
    if credential is not None:
        header = f"<s:Header>{ws_security_header(credential.username, credential.password)}</s:Header>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<s:Envelope xmlns:s="{SOAP_ENV_NS}">'
        f'{header}'
        f'<s:Body>{body}</s:Body>'
        '</s:Envelope>'
    )


def get_device_information_body() -> str:
    return f'<GetDeviceInformation xmlns="{TDS_NS}"/>'


def get_video_sources_body() -> str:
    return f'<GetVideoSources xmlns="{TRT_NS}"/>'


def get_hostname_body() -> str:
    return f'<GetHostname xmlns="{TDS_NS}"/>'


def get_network_interfaces_body() -> str:
    return f'<GetNetworkInterfaces xmlns="{TDS_NS}"/>'


def parse_device_information(xml_text) -> Optional[Dict[str, Optional[str]]]:
    root = _parse(xml_text)
    if root is None:
        return None
    response = _find(root, 'GetDeviceInformationResponse')
    if response is None:
        return None
    return {
        'manufacturer': _text(response, 'Manufacturer'),
        'model': _text(response, 'Model'),
        'firmware_version': _text(response, 'FirmwareVersion'),
        'serial_number': _text(response, 'SerialNumber'),
    }


def parse_video_sources(xml_text) -> List[str]:
    """Video source tokens; more than one usually means a recorder"""
    root = _parse(xml_text)
    if root is None:
        return []
    return [e.get('token') for e in _find_all(root, 'VideoSources') if e.get('token')]


def parse_hostname(xml_text) -> Optional[str]:
    root = _parse(xml_text)
    if root is None:
        return None
    info = _find(root, 'HostnameInformation')
    if info is None:
        return None
    return _text(info, 'Name')


def parse_network_mac(xml_text) -> Optional[str]:
    root = _parse(xml_text)
    if root is None:
        return None
    return normalize_mac(_text(root, 'HwAddress'))
