"""
Stream property analysis and compliance checks
Measures resolution, codec, profile, frame rate and bitrate of confirmed streams
"""

import time
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, replace

from ..discovery.models import Credential, Device, Stream
from ..workers import WorkerPool
from .grabber import GRABBER_ERRORS, open_stream

logger = logging.getLogger(__name__)

CODEC_NAMES = {
    'h264': "H.264",
    'hevc': "H.265/HEVC",
    'h265': "H.265/HEVC",
    'mpeg4': "MPEG-4",
    'mjpeg': "MJPEG",
}

H264_PROFILES = {
    66: "Baseline", 77: "Main", 88: "Extended", 100: "High", 110: "High 10",
    122: "High 4:2:2", 244: "High 4:4:4", 44: "CAVLC 4:4:4", 83: "Scalable Baseline",
    86: "Scalable High", 118: "Multiview High", 128: "Stereo High", 138: "Multiview Depth High",
}
HEVC_PROFILES = {1: "Main", 2: "Main 10", 3: "Main Still Picture", 4: "Rext"}


def codec_display_name(codec: Optional[str]) -> Optional[str]:
    if not codec:
        return None
    return CODEC_NAMES.get(codec.lower(), codec.upper())


def profile_name(codec: Optional[str], profile) -> Optional[str]:
    """Decoder profiles come as names or as numeric profile_idc values"""
    if profile is None or profile == '':
        return None
    if isinstance(profile, str) and not profile.isdigit():
        return profile
    number = int(profile)
    codec = (codec or '').lower()
    if codec == 'h264':
        return H264_PROFILES.get(number, f"Profile {number}")
    if codec in ('hevc', 'h265'):
        return HEVC_PROFILES.get(number, f"Profile {number}")
    return f"Profile {number}"


@dataclass
class ComplianceRules:
    """Thresholds for browser/HLS friendly streams"""
    flag_high_profile: bool = True
    sub_min_height: int = 360
    sub_max_height: int = 480
    sub_required_codec: str = "H.264"
    sub_max_bitrate_kbps: int = 512

    @classmethod
    def from_config(cls, config: Dict) -> 'ComplianceRules':
        defaults = cls()
        return cls(
            flag_high_profile=config.get('flag_high_profile', defaults.flag_high_profile),
            sub_min_height=config.get('sub_min_height', defaults.sub_min_height),
            sub_max_height=config.get('sub_max_height', defaults.sub_max_height),
            sub_required_codec=config.get('sub_required_codec', defaults.sub_required_codec),
            sub_max_bitrate_kbps=config.get('sub_max_bitrate_kbps', defaults.sub_max_bitrate_kbps),
        )

    def evaluate(self, stream: Stream) -> List[str]:
        issues = []
        if self.flag_high_profile and stream.profile and 'high' in stream.profile.lower():
            issues.append("High profile (requires transcoding for browser HLS)")

        if stream.is_sub_stream:
            height = _height(stream.resolution)
            if height is not None and not (self.sub_min_height <= height <= self.sub_max_height):
                issues.append(f"Resolution not in {self.sub_min_height}p-{self.sub_max_height}p range")
            if stream.codec and self.sub_required_codec not in stream.codec:
                issues.append(f"Codec is not {self.sub_required_codec}")
            if stream.bitrate_kbps is not None and stream.bitrate_kbps >= self.sub_max_bitrate_kbps:
                issues.append(f"Bitrate >= {self.sub_max_bitrate_kbps}kbps")
        return issues


def _height(resolution: Optional[str]) -> Optional[int]:
    if not resolution or 'x' not in resolution:
        return None
    try:
        return int(resolution.split('x', 1)[1])
    except ValueError:
        return None


class StreamAnalyzer:
    """Opens confirmed streams with PyAV and samples frames to fill in Stream properties"""

    def __init__(self, max_workers: int = 8, duration_seconds: float = 10, frame_samples: int = 30,
                 open_timeout: float = 5.0, rules: Optional[ComplianceRules] = None,
                 opener: Callable = open_stream, result_timeout: Optional[float] = None):
        self.duration_seconds = duration_seconds
        self.frame_samples = frame_samples
        self.open_timeout = open_timeout
        self.result_timeout = result_timeout if result_timeout is not None else duration_seconds + 10
        self.rules = rules or ComplianceRules()
        self.opener = opener
        self.pool = WorkerPool("stream-analysis", max_workers)
        # Guards writes to Stream objects against a timed-out analysis finishing late
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict) -> 'StreamAnalyzer':
        return cls(
            max_workers=config.get('max_threads', 8),
            duration_seconds=config.get('duration_seconds', 10),
            frame_samples=config.get('frame_samples', 30),
            open_timeout=config.get('open_timeout', 5.0),
            rules=ComplianceRules.from_config(config.get('compliance', {})),
        )

    def analyze_device(self, device: Device) -> None:
        """Analyze every stream of a device in parallel, bounded per stream"""
        if not device.streams:
            return
        jobs = []
        for stream in device.streams:
            abandoned = threading.Event()
            future = self.pool.submit(self.analyze_stream, stream, device.credential, abandoned)
            jobs.append((stream, abandoned, future))

        for stream, abandoned, future in jobs:
            try:
                future.result(timeout=self.result_timeout)
            except FutureTimeoutError:
                with self._lock:
                    abandoned.set()
                    stream.compliance_issues.append("Analysis failed: timed out")
                future.cancel()
                logger.warning(f"Analysis of {stream.url} timed out")

    def analyze_stream(self, stream: Stream, credential: Optional[Credential] = None,
                       abandoned: Optional[threading.Event] = None) -> Stream:
        measured: Dict[str, Any] = {}
        try:
            measured = self._measure(stream, credential)
        except (*GRABBER_ERRORS, ValueError) as e:
            issues = [f"Analysis failed: {e}"]
            logger.warning(f"Analysis of {stream.url} failed: {e}")
        except Exception as e:
            issues = [f"Analysis failed: {e}"]
            logger.error(f"Unexpected error analysing {stream.url}: {e}")
        else:
            issues = self.rules.evaluate(replace(stream, **measured))

        with self._lock:
            if abandoned is not None and abandoned.is_set():
                logger.debug(f"Discarding late analysis of {stream.url}")
                return stream
            for name, value in measured.items():
                setattr(stream, name, value)
            stream.compliance_issues.extend(issues)

        if measured:
            logger.info(f"Analyzed {stream.name} {stream.url}: {stream.resolution} {stream.codec} "
                        f"{stream.profile or ''} {stream.fps or '?'}fps {stream.bitrate_kbps}kbps"
                        f"{' [OK]' if not issues else ' [ISSUES: ' + '; '.join(issues) + ']'}")
        return stream

    def _measure(self, stream: Stream, credential: Optional[Credential]) -> Dict[str, Any]:
        """Open the stream and return the measured Stream fields"""
        container = self.opener(stream.url, self.open_timeout, credential)
        try:
            video = next((s for s in container.streams if s.type == 'video'), None)
            if video is None:
                raise ValueError("no video track")

            ctx = video.codec_context
            measured: Dict[str, Any] = {
                'codec': codec_display_name(ctx.name),
                'profile': profile_name(ctx.name, ctx.profile),
            }
            if ctx.width and ctx.height:
                measured['resolution'] = f"{ctx.width}x{ctx.height}"
            if video.average_rate:
                measured['fps'] = round(float(video.average_rate), 2)
            reported_bitrate = ctx.bit_rate or getattr(video, "bit_rate", None) or 0

            total_bytes = 0
            frames = 0
            start = time.monotonic()
            for packet in container.demux(video):
                total_bytes += packet.size or 0
                for _frame in packet.decode():
                    frames += 1
                if frames >= self.frame_samples or time.monotonic() - start >= self.duration_seconds:
                    break
            elapsed_ms = (time.monotonic() - start) * 1000

            if reported_bitrate > 0:
                measured['bitrate_kbps'] = int(reported_bitrate / 1000)
            elif elapsed_ms > 0 and total_bytes:
                measured['bitrate_kbps'] = int(total_bytes * 8 / elapsed_ms)
            return measured
        finally:
            container.close()

    def shutdown(self, timeout: float = 10.0) -> None:
        self.pool.shutdown(timeout)
