"""
Tests for the three stream validation strategies against an in-process RTSP server
"""

import re
import socket
import threading

import pytest

from cctv_discovery.auth import digest_response
from cctv_discovery.discovery.models import Credential
from cctv_discovery.rtsp.validators import (FrameCaptureValidator, RtpPacketValidator, SdpValidator,
                                            ValidationMethod, ValidationOutcome, create_validator)
from cctv_discovery.transport import parse_rtsp_url

from conftest import VIDEO_SDP

CREDENTIAL = Credential("admin", "1234")
CHALLENGE = ("WWW-Authenticate", 'Digest realm="cam1", nonce="abc123"')


def digest_protected(inner):
    """Wrap a handler so every request needs a correct digest for admin/1234"""
    def handler(method, url, headers):
        auth = headers.get('Authorization', '')
        uri = parse_rtsp_url(url)[2]
        expected = digest_response("admin", "1234", "cam1", "abc123", uri, method=method)
        if f'response="{expected}"' not in auth:
            return 401, "Unauthorized", [CHALLENGE], ""
        return inner(method, url, headers)
    return handler


def sdp_ok(method, url, headers):
    return 200, "OK", [("Content-Type", "application/sdp")], VIDEO_SDP


class TestValidationMethod:

    def test_defaults(self):
        assert ValidationMethod.SDP_ONLY.default_timeout == 3.0
        assert ValidationMethod.RTP_PACKET.default_timeout == 5.0
        assert ValidationMethod.FRAME_CAPTURE.default_timeout == 10.0

    def test_from_name(self):
        assert ValidationMethod.from_name("SDP_ONLY") is ValidationMethod.SDP_ONLY
        assert ValidationMethod.from_name("rtp-packet") is ValidationMethod.RTP_PACKET
        with pytest.raises(ValueError):
            ValidationMethod.from_name("ping")

    def test_create_validator(self):
        assert isinstance(create_validator(ValidationMethod.SDP_ONLY), SdpValidator)
        assert create_validator(ValidationMethod.SDP_ONLY).timeout == 3.0
        assert create_validator(ValidationMethod.RTP_PACKET, 7).timeout == 7
        assert create_validator(ValidationMethod.FRAME_CAPTURE, 0).timeout == 10.0


class TestSdpValidator:

    def test_confirms_video_sdp(self, rtsp_server):
        server = rtsp_server(sdp_ok)
        result = SdpValidator(2.0).validate(server.url("/live"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.CONFIRMED
        assert result.session_name == "Media Presentation"
        assert server.requests[0][2]['Accept'] == 'application/sdp'

    def test_rejects_sdp_without_video(self, rtsp_server):
        server = rtsp_server(lambda m, u, h: (200, "OK", [], "v=0\r\n"))
        result = SdpValidator(2.0).validate(server.url("/live"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.REJECTED

    def test_rejects_not_found(self, rtsp_server):
        server = rtsp_server(lambda m, u, h: (404, "Not Found", [], ""))
        result = SdpValidator(2.0).validate(server.url("/nope"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.REJECTED
        assert "404" in result.reason

    def test_digest_retry_on_same_connection(self, rtsp_server):
        server = rtsp_server(digest_protected(sdp_ok))
        result = SdpValidator(2.0).validate(server.url("/ch1"), CREDENTIAL)

        assert result.confirmed
        assert server.methods() == ["DESCRIBE", "DESCRIBE"]
        assert server.connections == 1
        authorization = server.requests[1][2]['Authorization']
        assert authorization.startswith('Digest username="admin", realm="cam1", nonce="abc123", uri="/ch1"')
        assert server.requests[1][2]['CSeq'] == '2'

    def test_digest_retry_after_server_closes(self, rtsp_server):
        server = rtsp_server(digest_protected(sdp_ok), close_after_401=True)
        result = SdpValidator(2.0).validate(server.url("/ch1"), CREDENTIAL)
        assert result.confirmed
        assert server.connections == 2

    def test_wrong_password_single_retry_only(self, rtsp_server):
        server = rtsp_server(digest_protected(sdp_ok))
        result = SdpValidator(2.0).validate(server.url("/ch1"), Credential("admin", "wrong"))
        assert result.outcome == ValidationOutcome.REJECTED
        assert server.methods() == ["DESCRIBE", "DESCRIBE"]

    def test_incomplete_challenge_is_not_answered(self, rtsp_server):
        server = rtsp_server(lambda m, u, h: (401, "Unauthorized",
                                              [("WWW-Authenticate", 'Digest realm="cam1"')], ""))
        result = SdpValidator(2.0).validate(server.url("/ch1"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.REJECTED
        assert server.methods() == ["DESCRIBE"]

    def test_basic_fallback(self, rtsp_server):
        def handler(method, url, headers):
            if headers.get('Authorization') == "Basic YWRtaW46MTIzNA==":
                return sdp_ok(method, url, headers)
            return 401, "Unauthorized", [("WWW-Authenticate", 'Basic realm="cam"')], ""

        server = rtsp_server(handler)
        assert SdpValidator(2.0).validate(server.url("/live"), CREDENTIAL).confirmed

    def test_connection_refused_is_network_error(self, closed_port):
        result = SdpValidator(1.0).validate(f"rtsp://127.0.0.1:{closed_port}/live", CREDENTIAL)
        assert result.outcome == ValidationOutcome.NETWORK_ERROR

    def test_silent_server_times_out(self):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(('127.0.0.1', 0))
        server.listen(1)
        try:
            result = SdpValidator(0.5).validate(f"rtsp://127.0.0.1:{server.getsockname()[1]}/live")
            assert result.outcome == ValidationOutcome.NETWORK_ERROR
        finally:
            server.close()


def send_rtp(port: int, count: int, version_byte: int = 0x80):
    sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        for seq in range(count):
            packet = bytes([version_byte, 96]) + seq.to_bytes(2, 'big') + bytes(8) + b"payload"
            sender.sendto(packet, ('127.0.0.1', port))
    finally:
        sender.close()


def rtp_handler(packet_count: int, version_byte: int = 0x80, session: bool = True):
    state = {}

    def handler(method, url, headers):
        if method == 'DESCRIBE':
            return sdp_ok(method, url, headers)
        if method == 'SETUP':
            state['client_port'] = int(re.search(r'client_port=(\d+)-', headers['Transport']).group(1))
            extra = [("Transport", headers['Transport'])]
            if session:
                extra.append(("Session", "ABCD1234;timeout=60"))
            return 200, "OK", extra, ""
        if method == 'PLAY':
            threading.Thread(target=send_rtp, args=(state['client_port'], packet_count, version_byte),
                             daemon=True).start()
            return 200, "OK", [("Session", "ABCD1234")], ""
        return 200, "OK", [], ""

    return handler


class TestRtpPacketValidator:

    def test_confirms_with_enough_packets(self, rtsp_server):
        server = rtsp_server(rtp_handler(6))
        result = RtpPacketValidator(2.0, packet_window=2.0).validate(server.url("/live"), CREDENTIAL)

        assert result.confirmed
        assert server.methods() == ["DESCRIBE", "SETUP", "PLAY", "TEARDOWN"]
        setup_url, setup_headers = server.requests[1][1], server.requests[1][2]
        assert setup_url == server.url("/live") + "/trackID=1"
        assert re.match(r"RTP/AVP;unicast;client_port=(\d+)-(\d+)", setup_headers['Transport'])
        play_headers = server.requests[2][2]
        assert play_headers['Session'] == "ABCD1234"
        assert play_headers['Range'] == "npt=0.000-"
        assert server.requests[3][2]['Session'] == "ABCD1234"

    def test_too_few_packets_still_tears_down(self, rtsp_server):
        server = rtsp_server(rtp_handler(2))
        result = RtpPacketValidator(2.0, packet_window=0.5).validate(server.url("/live"), CREDENTIAL)

        assert result.outcome == ValidationOutcome.REJECTED
        assert server.methods()[-1] == "TEARDOWN"

    def test_non_rtp_packets_are_ignored(self, rtsp_server):
        server = rtsp_server(rtp_handler(10, version_byte=0x40))
        result = RtpPacketValidator(2.0, packet_window=0.5).validate(server.url("/live"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.REJECTED

    def test_missing_session_header(self, rtsp_server):
        server = rtsp_server(rtp_handler(6, session=False))
        result = RtpPacketValidator(2.0, packet_window=0.5).validate(server.url("/live"), CREDENTIAL)
        assert result.outcome == ValidationOutcome.REJECTED
        assert "Session" in result.reason
        assert "TEARDOWN" not in server.methods()

    def test_authenticated_sequence_uses_fresh_connection(self, rtsp_server):
        server = rtsp_server(digest_protected(rtp_handler(6)))
        result = RtpPacketValidator(2.0, packet_window=2.0).validate(server.url("/live"), CREDENTIAL)

        assert result.confirmed
        assert server.connections == 2
        assert server.methods() == ["DESCRIBE", "DESCRIBE", "SETUP", "PLAY", "TEARDOWN"]
        assert 'Authorization' not in server.requests[0][2]
        for _, _, headers in server.requests[1:]:
            assert headers['Authorization'].startswith("Digest ")

    def test_wrong_password_sends_one_authenticated_describe(self, rtsp_server):
        server = rtsp_server(digest_protected(rtp_handler(6)))
        result = RtpPacketValidator(2.0, packet_window=0.5).validate(server.url("/live"),
                                                                    Credential("admin", "wrong"))

        assert result.outcome == ValidationOutcome.REJECTED
        assert "401" in result.reason
        assert server.methods() == ["DESCRIBE", "DESCRIBE"]
        authenticated = [h for _, _, h in server.requests if 'Authorization' in h]
        assert len(authenticated) == 1


class TestFrameCaptureValidator:

    def test_frame_decoded(self):
        calls = []

        def grabber(url, timeout, credential):
            calls.append((url, timeout, credential))
            return True

        result = FrameCaptureValidator(4.0, grabber=grabber).validate("rtsp://10.0.0.1/live", CREDENTIAL)
        assert result.confirmed
        assert calls == [("rtsp://10.0.0.1/live", 4.0, CREDENTIAL)]

    def test_no_frame(self):
        result = FrameCaptureValidator(grabber=lambda u, t, c: False).validate("rtsp://10.0.0.1/live")
        assert result.outcome == ValidationOutcome.REJECTED

    def test_open_failure_is_network_error(self):
        def grabber(url, timeout, credential):
            raise ConnectionRefusedError("refused")

        result = FrameCaptureValidator(grabber=grabber).validate("rtsp://10.0.0.1/live")
        assert result.outcome == ValidationOutcome.NETWORK_ERROR

    def test_unexpected_error_does_not_escape(self):
        def grabber(url, timeout, credential):
            raise RuntimeError("decoder exploded")

        result = FrameCaptureValidator(grabber=grabber).validate("rtsp://10.0.0.1/live")
        assert result.outcome == ValidationOutcome.NETWORK_ERROR
