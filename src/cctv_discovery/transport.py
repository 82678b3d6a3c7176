"""
Socket level transport primitives
TCP port probing, a small RTSP request/response client and UDP multicast helpers
"""

import socket
import time
import logging
from typing import Dict, Iterator, List, Optional, Tuple
from dataclasses import dataclass, field
from urllib.parse import quote, urlsplit, urlunsplit

from .discovery.models import Credential

logger = logging.getLogger(__name__)

RTSP_DEFAULT_PORT = 554
USER_AGENT = "CCTV-Discovery/1.0"
MAX_LINE_LENGTH = 8192
MAX_BODY_LENGTH = 1024 * 1024


class RtspProtocolError(ValueError):
    """Response did not look like RTSP"""


def is_port_open(host: str, port: int, timeout: float = 2.0) -> bool:
    """TCP connect probe with timeout, never raises"""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def parse_rtsp_url(url: str) -> Tuple[str, int, str]:
    """Split an rtsp:// URL into (host, port, request_uri). request_uri keeps the query."""
    parts = urlsplit(url)
    if not parts.hostname:
        raise RtspProtocolError(f"No host in URL: {url}")
    uri = parts.path or "/"
    if parts.query:
        uri = f"{uri}?{parts.query}"
    return parts.hostname, parts.port or RTSP_DEFAULT_PORT, uri


def build_rtsp_url(ip: str, port: int, path: str) -> str:
    if not path.startswith('/'):
        path = '/' + path
    return f"rtsp://{ip}:{port}{path}"


def embed_credentials(url: str, credential: Optional[Credential]) -> str:
    """Put user:password@ into the URL authority (for tools that take one URL)"""
    if not credential or not credential.username:
        return url
    parts = urlsplit(url)
    host = parts.hostname or ''
    if parts.port:
        host = f"{host}:{parts.port}"
    userinfo = f"{quote(credential.username, safe='')}:{quote(credential.password, safe='')}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))


@dataclass
class RtspResponse:
    """Parsed RTSP response"""
    status_code: int
    reason: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    def header_values(self, name: str) -> List[str]:
        name = name.lower()
        return [value for key, value in self.headers if key.lower() == name]

    @property
    def session_id(self) -> Optional[str]:
        session = self.header('Session')
        if not session:
            return None
        return session.split(';')[0].strip() or None


class RtspConnection:
    """
    Line oriented RTSP client over one TCP connection.
    Every operation is bounded by the socket timeout.
    """

    def __init__(self, host: str, port: int, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.cseq = 0
        self._sock: Optional[socket.socket] = None
        self._reader = None

    def connect(self) -> 'RtspConnection':
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        self._sock.settimeout(self.timeout)
        self._reader = self._sock.makefile('rb')
        return self

    def close(self) -> None:
        if self._reader is not None:
            try:
                self._reader.close()
            except OSError:
                pass
            self._reader = None
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def __enter__(self) -> 'RtspConnection':
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None) -> RtspResponse:
        """Send one request and read its response"""
        if not self.connected:
            self.connect()
        self.cseq += 1

        lines = [f"{method} {url} RTSP/1.0", f"CSeq: {self.cseq}", f"User-Agent: {USER_AGENT}"]
        for key, value in (headers or {}).items():
            lines.append(f"{key}: {value}")
        payload = "\r\n".join(lines) + "\r\n\r\n"

        logger.debug(f"RTSP >> {method} {url} (CSeq {self.cseq})")
        self._sock.sendall(payload.encode('utf-8'))
        response = self._read_response()
        logger.debug(f"RTSP << {response.status_code} {response.reason}")
        return response

    def _readline(self) -> str:
        line = self._reader.readline(MAX_LINE_LENGTH)
        if not line:
            raise ConnectionResetError("Connection closed by peer")
        return line.decode('utf-8', errors='replace').rstrip('\r\n')

    def _read_response(self) -> RtspResponse:
        status_line = self._readline()
        parts = status_line.split(' ', 2)
        if len(parts) < 2 or not parts[0].startswith('RTSP/'):
            raise RtspProtocolError(f"Bad status line: {status_line!r}")
        try:
            status_code = int(parts[1])
        except ValueError:
            raise RtspProtocolError(f"Bad status code: {status_line!r}")
        reason = parts[2] if len(parts) > 2 else ""

        headers = []
        while True:
            line = self._readline()
            if not line:
                break
            if ':' in line:
                key, value = line.split(':', 1)
                headers.append((key.strip(), value.strip()))

        response = RtspResponse(status_code=status_code, reason=reason, headers=headers)
        response.body = self._read_body(response)
        return response

    def _read_body(self, response: RtspResponse) -> str:
        length_header = response.header('Content-Length')
        if length_header is not None:
            try:
                length = min(int(length_header), MAX_BODY_LENGTH)
            except ValueError:
                raise RtspProtocolError(f"Bad Content-Length: {length_header!r}")
            data = self._reader.read(length) if length > 0 else b""
            return data.decode('utf-8', errors='replace')

        if response.status_code != 200 or response.header('Content-Type') is None:
            return ""

        # Typed body without a length: read lines until a blank line or the peer goes quiet
        body_lines = []
        try:
            while True:
                line = self._reader.readline(MAX_LINE_LENGTH)
                if not line:
                    break
                text = line.decode('utf-8', errors='replace').rstrip('\r\n')
                if not text:
                    break
                body_lines.append(text)
        except socket.timeout:
            pass
        return "\r\n".join(body_lines)


def open_multicast_socket(ttl: int = 2, timeout: float = 1.0) -> socket.socket:
    """UDP socket ready to send to a multicast group and read unicast replies"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, ttl)
    sock.bind(('', 0))
    sock.settimeout(timeout)
    return sock


def receive_datagrams(sock: socket.socket, window: float,
                      bufsize: int = 65535) -> Iterator[Tuple[bytes, Tuple[str, int]]]:
    """Yield (data, addr) until the listen window closes"""
    deadline = time.monotonic() + window
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        sock.settimeout(min(remaining, 1.0))
        try:
            yield sock.recvfrom(bufsize)
        except socket.timeout:
            continue


def open_rtp_socket(timeout: float = 2.0) -> socket.socket:
    """Bind an ephemeral UDP port for RTP. The RTCP port is the next one up."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('', 0))
    sock.settimeout(timeout)
    return sock
