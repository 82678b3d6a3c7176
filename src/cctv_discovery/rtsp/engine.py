"""
RTSP stream discovery engine

Waterfall per device, stopping at two confirmed streams:
  1. paths that worked on devices with the same MAC prefix (smart cache)
  2. vendor paths for the device manufacturer
  3. operator supplied main/sub pairs
  4. generic fallback paths
NVR/DVR devices additionally get per-channel enumeration from a vendor template.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from ..discovery.models import Credential, Device, Stream
from ..transport import build_rtsp_url
from .smart_cache import SmartCache
from .templates import TemplateStore
from .validators import StreamValidator, ValidationResult

logger = logging.getLogger(__name__)

MAX_STREAMS_PER_DEVICE = 2
STREAM_NAMES = ("Main", "Sub")


def guess_substream_path(path: str) -> Optional[str]:
    """Derive the likely sub-stream path from a main-stream path, or None"""
    if "/101" in path:
        return path.replace("/101", "/102")
    if "subtype=0" in path:
        return path.replace("subtype=0", "subtype=1")
    if "/main/" in path:
        return path.replace("/main/", "/sub/")
    if path.endswith("_0"):
        return path[:-2] + "_1"
    if path.endswith("/0"):
        return path[:-2] + "/1"
    if path == "/live":
        return "/live/1"
    return None


def _unique(paths: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for path in paths:
        if path and path not in seen:
            seen.add(path)
            ordered.append(path)
    return ordered


class RtspDiscoveryEngine:
    """Finds up to two working RTSP URLs per device"""

    def __init__(self, validator: StreamValidator, templates: Optional[TemplateStore] = None,
                 smart_cache: Optional[SmartCache] = None,
                 custom_paths: Sequence[Tuple[str, str]] = ()):
        self.validator = validator
        self.templates = templates or TemplateStore()
        self.smart_cache = smart_cache if smart_cache is not None else SmartCache()
        self.custom_paths = list(custom_paths)

    def discover_streams(self, device: Device, credential: Optional[Credential]) -> List[Stream]:
        """Run the path waterfall against every RTSP port of the device"""
        if not device.rtsp_ports:
            logger.debug(f"{device.ip}: no RTSP ports, skipping stream discovery")
            return []

        streams: List[Stream] = []
        tried: Set[str] = set()
        prefix = device.mac_prefix

        # Step 1 and 2: learned paths, then vendor paths
        known_paths = _unique(self.smart_cache.get(prefix) + self.templates.paths_for(device.manufacturer))
        if self._try_paths(device, known_paths, credential, streams, tried):
            return streams

        # Step 3: operator main/sub pairs
        for main_path, sub_path in self.custom_paths:
            for port in device.rtsp_ports:
                if len(streams) >= MAX_STREAMS_PER_DEVICE:
                    return streams
                if not self._confirm(device, port, main_path, credential, streams, tried):
                    continue
                self.smart_cache.add(prefix, main_path)
                if len(streams) < MAX_STREAMS_PER_DEVICE and \
                        self._confirm(device, port, sub_path, credential, streams, tried):
                    self.smart_cache.add(prefix, sub_path)
                break
            if len(streams) >= MAX_STREAMS_PER_DEVICE:
                return streams

        # Step 4: generic fallback
        generic_paths = [p for p in self.templates.generic_paths if p not in known_paths]
        self._try_paths(device, generic_paths, credential, streams, tried)
        return streams

    def _try_paths(self, device: Device, paths: List[str], credential: Optional[Credential],
                   streams: List[Stream], tried: Set[str]) -> bool:
        """Try each path on each port. Returns True once the stream cap is reached."""
        prefix = device.mac_prefix
        for path in paths:
            for port in device.rtsp_ports:
                if len(streams) >= MAX_STREAMS_PER_DEVICE:
                    return True
                if not self._confirm(device, port, path, credential, streams, tried):
                    continue
                self.smart_cache.add(prefix, path)

                if len(streams) == 1:
                    sub_path = guess_substream_path(path)
                    if sub_path and self._confirm(device, port, sub_path, credential, streams, tried):
                        self.smart_cache.add(prefix, sub_path)
                break
        return len(streams) >= MAX_STREAMS_PER_DEVICE

    def _confirm(self, device: Device, port: int, path: str, credential: Optional[Credential],
                 streams: List[Stream], tried: Set[str]) -> bool:
        url = build_rtsp_url(device.ip, port, path)
        if url in tried:
            return False
        tried.add(url)

        result = self._validate(url, credential)
        if not result.confirmed:
            return False
        name = STREAM_NAMES[min(len(streams), len(STREAM_NAMES) - 1)]
        streams.append(Stream(name=name, url=url, session_name=result.session_name))
        return True

    def _validate(self, url: str, credential: Optional[Credential]) -> ValidationResult:
        result = self.validator.validate(url, credential)
        if result.confirmed:
            label = f" ({result.session_name})" if result.session_name else ""
            logger.info(f"[PASS] Stream confirmed: {url}{label}")
        else:
            logger.debug(f"[FAIL] {url}: {result.outcome.value} - {result.reason}")
        return result

    def iterate_nvr_channels(self, device: Device, credential: Optional[Credential],
                             max_channels: int = 64, max_consecutive_failures: int = 3) -> List[Stream]:
        """Walk recorder channels 1..max_channels until too many mains fail in a row"""
        if not device.rtsp_ports:
            return []

        port = device.rtsp_ports[0]
        template = self.templates.nvr_template_for(device.manufacturer)
        streams: List[Stream] = []
        failures = 0

        logger.info(f"[NVR] {device.ip}: probing up to {max_channels} channels on port {port}")
        for channel in range(1, max_channels + 1):
            main_url = build_rtsp_url(device.ip, port, template.main_path(channel))
            result = self._validate(main_url, credential)
            if not result.confirmed:
                failures += 1
                if failures >= max_consecutive_failures:
                    logger.info(f"[NVR] {device.ip}: stopping after {failures} consecutive "
                                f"failures at channel {channel}")
                    break
                continue

            failures = 0
            streams.append(Stream(name=f"CH{channel} Main", url=main_url, channel=channel,
                                  session_name=result.session_name))
            sub_url = build_rtsp_url(device.ip, port, template.sub_path(channel))
            sub_result = self._validate(sub_url, credential)
            if sub_result.confirmed:
                streams.append(Stream(name=f"CH{channel} Sub", url=sub_url, channel=channel,
                                      session_name=sub_result.session_name))

        logger.info(f"[NVR] {device.ip}: found {len(streams)} channel streams")
        return streams
