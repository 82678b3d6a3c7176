"""
Shared fixtures: an in-process RTSP server speaking just enough of the protocol
"""

import socket
import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from cctv_discovery.config_loader import get_default_config

Reply = Tuple[int, str, List[Tuple[str, str]], str]


class FakeRtspServer:
    """
    Scripted RTSP server on 127.0.0.1.
    handler(method, url, headers) returns (status, reason, extra_headers, body).
    Set close_after_401 to drop the connection after every 401 reply.
    """

    def __init__(self, handler: Callable[[str, str, Dict[str, str]], Reply], close_after_401: bool = False):
        self.handler = handler
        self.close_after_401 = close_after_401
        self.requests: List[Tuple[str, str, Dict[str, str]]] = []
        self.connections = 0
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(('127.0.0.1', 0))
        self._sock.listen(8)
        self._sock.settimeout(0.2)
        self.port = self._sock.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def url(self, path: str) -> str:
        return f"rtsp://127.0.0.1:{self.port}{path}"

    def methods(self) -> List[str]:
        return [method for method, _, _ in self.requests]

    def start(self) -> 'FakeRtspServer':
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2)
        self._sock.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket):
        conn.settimeout(5)
        reader = conn.makefile('rb')
        try:
            while True:
                request_line = reader.readline()
                if not request_line:
                    return
                method, url, _ = request_line.decode().strip().split(' ', 2)
                headers = {}
                while True:
                    line = reader.readline().decode().strip()
                    if not line:
                        break
                    key, value = line.split(':', 1)
                    headers[key.strip()] = value.strip()
                self.requests.append((method, url, headers))

                status, reason, extra, body = self.handler(method, url, headers)
                lines = [f"RTSP/1.0 {status} {reason}", f"CSeq: {headers.get('CSeq', '0')}"]
                lines.extend(f"{k}: {v}" for k, v in extra)
                if body:
                    lines.append(f"Content-Length: {len(body.encode())}")
                payload = "\r\n".join(lines) + "\r\n\r\n" + body
                conn.sendall(payload.encode())
                if status == 401 and self.close_after_401:
                    return
        except (OSError, ValueError):
            return
        finally:
            reader.close()
            conn.close()


VIDEO_SDP = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 127.0.0.1\r\n"
    "s=Media Presentation\r\n"
    "t=0 0\r\n"
    "m=video 0 RTP/AVP 96\r\n"
    "a=rtpmap:96 H264/90000\r\n"
    "a=control:trackID=1\r\n"
)


@pytest.fixture
def rtsp_server():
    servers = []

    def _start(handler, close_after_401: bool = False) -> FakeRtspServer:
        server = FakeRtspServer(handler, close_after_401).start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.stop()


@pytest.fixture
def default_config() -> Dict:
    return get_default_config()


@pytest.fixture
def closed_port() -> int:
    """A localhost port with nothing listening on it"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
