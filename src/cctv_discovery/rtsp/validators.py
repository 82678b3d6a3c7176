"""
RTSP stream validation strategies

Three levels of evidence that a candidate URL is a real stream:
  SDP_ONLY       DESCRIBE returns a session description with a video track
  RTP_PACKET     DESCRIBE/SETUP/PLAY and RTP version 2 packets arrive over UDP
  FRAME_CAPTURE  FFmpeg decodes at least one video frame

Validators never raise; every outcome comes back as a ValidationResult.
"""

import socket
import time
import logging
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
from dataclasses import dataclass

from ..auth import Authenticator, select_challenge
from ..discovery.models import Credential
from ..transport import (RtspConnection, RtspProtocolError, RtspResponse,
                         open_rtp_socket, parse_rtsp_url)
from ..analysis.grabber import GRABBER_ERRORS, grab_frame
from .sdp import parse_sdp

logger = logging.getLogger(__name__)

RTP_VERSION = 2
RTP_HEADER_LENGTH = 12


class ValidationMethod(Enum):
    SDP_ONLY = ("sdp_only", "SDP only", 3.0)
    RTP_PACKET = ("rtp_packet", "RTP packet", 5.0)
    FRAME_CAPTURE = ("frame_capture", "Frame capture", 10.0)

    def __init__(self, key: str, label: str, default_timeout: float):
        self.key = key
        self.label = label
        self.default_timeout = default_timeout

    @classmethod
    def from_name(cls, name: str) -> 'ValidationMethod':
        normalized = str(name).strip().lower().replace('-', '_').replace(' ', '_')
        for method in cls:
            if method.key == normalized:
                return method
        raise ValueError(f"Unknown validation method: {name}")


class ValidationOutcome(Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    NETWORK_ERROR = "network_error"


@dataclass
class ValidationResult:
    """Outcome of validating one candidate URL"""
    outcome: ValidationOutcome
    url: str
    reason: Optional[str] = None
    session_name: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == ValidationOutcome.CONFIRMED

    @classmethod
    def ok(cls, url: str, session_name: Optional[str] = None) -> 'ValidationResult':
        return cls(ValidationOutcome.CONFIRMED, url, session_name=session_name)

    @classmethod
    def rejected(cls, url: str, reason: str) -> 'ValidationResult':
        return cls(ValidationOutcome.REJECTED, url, reason=reason)

    @classmethod
    def network_error(cls, url: str, reason: str) -> 'ValidationResult':
        return cls(ValidationOutcome.NETWORK_ERROR, url, reason=reason)


def describe(conn: RtspConnection, url: str,
             credential: Optional[Credential]) -> Tuple[RtspResponse, Optional[Authenticator]]:
    """
    DESCRIBE with one authenticated retry on 401.
    The retry reuses the socket unless the server closed it after the challenge.
    """
    _, _, uri = parse_rtsp_url(url)
    headers = {'Accept': 'application/sdp'}
    response = conn.request('DESCRIBE', url, headers)
    if response.status_code != 401 or credential is None:
        return response, None

    challenge = select_challenge(response.header_values('WWW-Authenticate'))
    if challenge is None:
        logger.debug(f"[AUTH] No usable challenge from {url}")
        return response, None

    authenticator = Authenticator(challenge, credential)
    headers['Authorization'] = authenticator.header('DESCRIBE', uri)
    try:
        response = conn.request('DESCRIBE', url, headers)
    except (ConnectionResetError, BrokenPipeError):
        conn.close()
        conn.connect()
        response = conn.request('DESCRIBE', url, headers)
    return response, authenticator


class StreamValidator:
    """Base class: subclasses implement _validate and may raise OSError/RtspProtocolError"""

    method: ValidationMethod = ValidationMethod.SDP_ONLY

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout and timeout > 0 else self.method.default_timeout

    def validate(self, url: str, credential: Optional[Credential] = None) -> ValidationResult:
        try:
            return self._validate(url, credential)
        except RtspProtocolError as e:
            return ValidationResult.rejected(url, f"protocol error: {e}")
        except socket.timeout:
            return ValidationResult.network_error(url, "timed out")
        except OSError as e:
            return ValidationResult.network_error(url, str(e) or e.__class__.__name__)
        except Exception as e:
            logger.warning(f"Unexpected error validating {url}: {e}")
            return ValidationResult.network_error(url, str(e))

    def _validate(self, url: str, credential: Optional[Credential]) -> ValidationResult:
        raise NotImplementedError


class SdpValidator(StreamValidator):
    """DESCRIBE only; the SDP must carry v= and m=video"""

    method = ValidationMethod.SDP_ONLY

    def _validate(self, url: str, credential: Optional[Credential]) -> ValidationResult:
        host, port, _ = parse_rtsp_url(url)
        with RtspConnection(host, port, self.timeout) as conn:
            response, _ = describe(conn, url, credential)

        if response.status_code != 200:
            return ValidationResult.rejected(url, f"DESCRIBE returned {response.status_code}")
        sdp = parse_sdp(response.body)
        if not sdp.is_valid:
            return ValidationResult.rejected(url, "SDP has no version or video media line")
        if sdp.codecs:
            logger.debug(f"SDP codecs for {url}: {', '.join(sdp.codecs)}")
        return ValidationResult.ok(url, sdp.session_name)


class RtpPacketValidator(StreamValidator):
    """DESCRIBE/SETUP/PLAY, then count RTP v2 packets on the client port"""

    method = ValidationMethod.RTP_PACKET

    def __init__(self, timeout: Optional[float] = None, packet_window: float = 2.0, min_packets: int = 5):
        super().__init__(timeout)
        self.packet_window = packet_window
        self.min_packets = min_packets

    def _auth_headers(self, authenticator: Optional[Authenticator], method: str, url: str) -> Dict[str, str]:
        if authenticator is None:
            return {}
        _, _, uri = parse_rtsp_url(url)
        return {'Authorization': authenticator.header(method, uri)}

    def _validate(self, url: str, credential: Optional[Credential]) -> ValidationResult:
        host, port, _ = parse_rtsp_url(url)
        conn = RtspConnection(host, port, self.timeout).connect()
        rtp_sock = None
        session_id = None
        authenticator = None
        try:
            response = conn.request('DESCRIBE', url, {'Accept': 'application/sdp'})
            if response.status_code == 401 and credential is not None:
                challenge = select_challenge(response.header_values('WWW-Authenticate'))
                if challenge is None:
                    logger.debug(f"[AUTH] No usable challenge from {url}")
                    return ValidationResult.rejected(url, "DESCRIBE returned 401")
                authenticator = Authenticator(challenge, credential)
                # Single authenticated DESCRIBE, then SETUP/PLAY, on a fresh connection
                conn.close()
                conn = RtspConnection(host, port, self.timeout).connect()
                headers = {'Accept': 'application/sdp'}
                headers.update(self._auth_headers(authenticator, 'DESCRIBE', url))
                response = conn.request('DESCRIBE', url, headers)

            if response.status_code != 200:
                return ValidationResult.rejected(url, f"DESCRIBE returned {response.status_code}")
            sdp = parse_sdp(response.body)
            if not sdp.is_valid:
                return ValidationResult.rejected(url, "SDP has no version or video media line")

            rtp_sock = open_rtp_socket(self.packet_window)
            client_port = rtp_sock.getsockname()[1]
            control_url = sdp.control_url(url)

            headers = {'Transport': f"RTP/AVP;unicast;client_port={client_port}-{client_port + 1}"}
            headers.update(self._auth_headers(authenticator, 'SETUP', control_url))
            response = conn.request('SETUP', control_url, headers)
            if response.status_code != 200:
                return ValidationResult.rejected(url, f"SETUP returned {response.status_code}")
            session_id = response.session_id
            if not session_id:
                return ValidationResult.rejected(url, "SETUP response has no Session header")

            headers = {'Session': session_id, 'Range': 'npt=0.000-'}
            headers.update(self._auth_headers(authenticator, 'PLAY', url))
            response = conn.request('PLAY', url, headers)
            if response.status_code != 200:
                return ValidationResult.rejected(url, f"PLAY returned {response.status_code}")

            packets = self._count_rtp_packets(rtp_sock)
            if packets < self.min_packets:
                return ValidationResult.rejected(url, f"only {packets} RTP packets in {self.packet_window}s")
            return ValidationResult.ok(url, sdp.session_name)
        finally:
            if session_id:
                self._teardown(conn, url, session_id, authenticator)
            if rtp_sock is not None:
                rtp_sock.close()
            conn.close()

    def _count_rtp_packets(self, sock: socket.socket) -> int:
        count = 0
        deadline = time.monotonic() + self.packet_window
        while count < self.min_packets:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                data, _ = sock.recvfrom(2048)
            except socket.timeout:
                break
            if len(data) >= RTP_HEADER_LENGTH and (data[0] & 0xC0) >> 6 == RTP_VERSION:
                count += 1
        return count

    def _teardown(self, conn: RtspConnection, url: str, session_id: str,
                  authenticator: Optional[Authenticator]) -> None:
        headers = {'Session': session_id}
        headers.update(self._auth_headers(authenticator, 'TEARDOWN', url))
        try:
            conn.request('TEARDOWN', url, headers)
        except (OSError, RtspProtocolError) as e:
            logger.debug(f"TEARDOWN failed for {url}: {e}")


class FrameCaptureValidator(StreamValidator):
    """Decode one frame through FFmpeg"""

    method = ValidationMethod.FRAME_CAPTURE

    def __init__(self, timeout: Optional[float] = None, grabber: Callable[..., bool] = grab_frame):
        super().__init__(timeout)
        self.grabber = grabber

    def _validate(self, url: str, credential: Optional[Credential]) -> ValidationResult:
        try:
            if self.grabber(url, self.timeout, credential):
                return ValidationResult.ok(url)
            return ValidationResult.rejected(url, "no decodable video frame")
        except GRABBER_ERRORS as e:
            return ValidationResult.network_error(url, str(e))


def create_validator(method: ValidationMethod, timeout: Optional[float] = None, **kwargs) -> StreamValidator:
    """Validator for the configured method; timeout None or 0 uses the method default"""
    if method == ValidationMethod.SDP_ONLY:
        return SdpValidator(timeout)
    if method == ValidationMethod.RTP_PACKET:
        return RtpPacketValidator(timeout, **kwargs)
    return FrameCaptureValidator(timeout, **kwargs)
