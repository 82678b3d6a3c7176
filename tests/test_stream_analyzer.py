"""
Tests for stream measurement and compliance rules, with a stand-in for the PyAV container
"""

import threading
from fractions import Fraction
from types import SimpleNamespace

import pytest

from cctv_discovery.analysis.grabber import grabber_options
from cctv_discovery.analysis.stream_analyzer import (ComplianceRules, StreamAnalyzer, codec_display_name,
                                                     profile_name)
from cctv_discovery.discovery.models import Credential, Device, Stream


class FakePacket:

    def __init__(self, size: int):
        self.size = size

    def decode(self):
        return [object()]


class FakeContainer:

    def __init__(self, codec="h264", profile="High", width=1920, height=1080, bit_rate=4_000_000,
                 fps=Fraction(25), video=True, packets=40):
        codec_context = SimpleNamespace(name=codec, profile=profile, width=width, height=height,
                                        bit_rate=bit_rate)
        self.video = SimpleNamespace(type='video', codec_context=codec_context, average_rate=fps,
                                     bit_rate=None)
        self.streams = [SimpleNamespace(type='audio')] + ([self.video] if video else [])
        self.packets = packets
        self.closed = False

    def demux(self, stream):
        assert stream is self.video
        for _ in range(self.packets):
            yield FakePacket(1500)

    def close(self):
        self.closed = True


def opener_for(containers):
    """containers maps url -> FakeContainer or an exception to raise"""
    calls = []

    def opener(url, timeout, credential):
        calls.append((url, timeout, credential))
        item = containers[url]
        if isinstance(item, Exception):
            raise item
        return item

    opener.calls = calls
    return opener


class TestNames:

    def test_codec_display_name(self):
        assert codec_display_name("h264") == "H.264"
        assert codec_display_name("hevc") == "H.265/HEVC"
        assert codec_display_name("vp9") == "VP9"
        assert codec_display_name(None) is None

    @pytest.mark.parametrize("codec, profile, name", [
        ("h264", "High", "High"),
        ("h264", 100, "High"),
        ("h264", "66", "Baseline"),
        ("hevc", 1, "Main"),
        ("h264", 999, "Profile 999"),
        ("mjpeg", None, None),
    ])
    def test_profile_name(self, codec, profile, name):
        assert profile_name(codec, profile) == name


class TestComplianceRules:

    def test_compliant_sub_stream(self):
        stream = Stream(name="Sub", url="rtsp://x/sub", resolution="640x360", codec="H.264",
                        profile="Main", bitrate_kbps=384)
        assert ComplianceRules().evaluate(stream) == []

    def test_sub_stream_issues(self):
        stream = Stream(name="Sub", url="rtsp://x/sub", resolution="1920x1080", codec="H.265/HEVC",
                        profile="Main", bitrate_kbps=512)
        assert ComplianceRules().evaluate(stream) == [
            "Resolution not in 360p-480p range",
            "Codec is not H.264",
            "Bitrate >= 512kbps",
        ]

    def test_high_profile_flagged_on_any_stream(self):
        stream = Stream(name="Main", url="rtsp://x/main", resolution="3840x2160", codec="H.265/HEVC",
                        profile="High", bitrate_kbps=8000)
        assert ComplianceRules().evaluate(stream) == ["High profile (requires transcoding for browser HLS)"]

    def test_main_stream_has_no_sub_rules(self):
        stream = Stream(name="CH2 Main", url="rtsp://x/main", resolution="1920x1080", codec="H.265/HEVC",
                        profile="Main", bitrate_kbps=4096)
        assert ComplianceRules().evaluate(stream) == []

    def test_from_config(self):
        rules = ComplianceRules.from_config({'sub_max_bitrate_kbps': 1024, 'flag_high_profile': False})
        assert rules.sub_max_bitrate_kbps == 1024
        assert rules.flag_high_profile is False
        assert rules.sub_min_height == 360


class TestStreamAnalyzer:

    def test_measures_main_and_sub(self):
        credential = Credential("admin", "1234")
        main = FakeContainer()
        sub = FakeContainer(codec="h264", profile="Main", width=640, height=360, bit_rate=256_000)
        opener = opener_for({"rtsp://10.0.0.5/main": main, "rtsp://10.0.0.5/sub": sub})
        analyzer = StreamAnalyzer(max_workers=2, duration_seconds=5, frame_samples=10, opener=opener)
        device = Device(ip="10.0.0.5", credential=credential, streams=[
            Stream(name="Main", url="rtsp://10.0.0.5/main"),
            Stream(name="Sub", url="rtsp://10.0.0.5/sub"),
        ])

        try:
            analyzer.analyze_device(device)
        finally:
            analyzer.shutdown(timeout=2)

        main_stream, sub_stream = device.streams
        assert main_stream.resolution == "1920x1080"
        assert main_stream.codec == "H.264"
        assert main_stream.profile == "High"
        assert main_stream.fps == 25.0
        assert main_stream.bitrate_kbps == 4000
        assert main_stream.compliance_issues == ["High profile (requires transcoding for browser HLS)"]
        assert sub_stream.resolution == "640x360"
        assert sub_stream.bitrate_kbps == 256
        assert sub_stream.compliant
        assert main.closed and sub.closed
        assert all(call[2] == credential for call in opener.calls)

    def test_bitrate_from_observed_bytes(self):
        container = FakeContainer(bit_rate=0, packets=20)
        analyzer = StreamAnalyzer(frame_samples=100, opener=opener_for({"rtsp://x/main": container}))
        try:
            stream = analyzer.analyze_stream(Stream(name="Main", url="rtsp://x/main"))
        finally:
            analyzer.shutdown(timeout=1)
        assert stream.bitrate_kbps is not None and stream.bitrate_kbps > 0

    def test_open_failure_is_recorded(self):
        analyzer = StreamAnalyzer(opener=opener_for({"rtsp://x/main": OSError("Connection refused")}))
        try:
            stream = analyzer.analyze_stream(Stream(name="Main", url="rtsp://x/main"))
        finally:
            analyzer.shutdown(timeout=1)
        assert stream.compliance_issues == ["Analysis failed: Connection refused"]
        assert stream.resolution is None

    def test_no_video_track(self):
        container = FakeContainer(video=False)
        analyzer = StreamAnalyzer(opener=opener_for({"rtsp://x/main": container}))
        try:
            stream = analyzer.analyze_stream(Stream(name="Main", url="rtsp://x/main"))
        finally:
            analyzer.shutdown(timeout=1)
        assert stream.compliance_issues == ["Analysis failed: no video track"]
        assert container.closed

    def test_device_without_streams(self):
        analyzer = StreamAnalyzer(opener=opener_for({}))
        try:
            analyzer.analyze_device(Device(ip="10.0.0.5"))
        finally:
            analyzer.shutdown(timeout=1)
        assert analyzer.opener.calls == []

    def test_timed_out_analysis_does_not_write_late_results(self):
        release = threading.Event()
        finished = threading.Event()

        def slow_opener(url, timeout, credential):
            release.wait(5)
            return FakeContainer()

        analyzer = StreamAnalyzer(opener=slow_opener, result_timeout=0.2)
        original = analyzer.analyze_stream

        def tracked(*args):
            try:
                return original(*args)
            finally:
                finished.set()

        analyzer.analyze_stream = tracked
        device = Device(ip="10.0.0.5", streams=[Stream(name="Main", url="rtsp://10.0.0.5/main")])
        try:
            analyzer.analyze_device(device)
            release.set()
            assert finished.wait(5)
        finally:
            analyzer.shutdown(timeout=2)

        stream = device.streams[0]
        assert stream.compliance_issues == ["Analysis failed: timed out"]
        assert stream.resolution is None
        assert stream.codec is None

    def test_from_config(self):
        analyzer = StreamAnalyzer.from_config({'max_threads': 3, 'duration_seconds': 4,
                                               'compliance': {'sub_max_height': 576}})
        try:
            assert analyzer.pool.max_workers == 3
            assert analyzer.duration_seconds == 4
            assert analyzer.rules.sub_max_height == 576
        finally:
            analyzer.shutdown(timeout=1)


def test_grabber_options():
    options = grabber_options(2.5)
    assert options['rtsp_transport'] == 'tcp'
    assert options['timeout'] == '2500000'
    assert options['fflags'] == 'nobuffer'
