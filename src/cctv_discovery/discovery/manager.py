"""
Main discovery manager
Runs WS-Discovery and port scanning, merges the results, then authenticates
each device and resolves its RTSP streams
"""

import asyncio
import functools
import logging
import time
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional

from .models import Credential, Device, DeviceStatus, DiscoveryResult
from .network_scanner import NetworkScanner, ProgressCallback, generate_ip_list, merge_device_lists
from ..onvif import OnvifClient
from ..rtsp import (RtspDiscoveryEngine, SmartCache, TemplateStore, ValidationMethod,
                    create_validator)
from ..analysis import StreamAnalyzer
from ..workers import WorkerPool

logger = logging.getLogger(__name__)

ERROR_UNKNOWN_DEVICE = "Unknown device type"
ERROR_AUTH_FAILED = "Authentication failed with all credentials"


class DiscoveryManager:
    """Discovery, authentication waterfall and stream resolution for a set of devices"""

    def __init__(self, config: Dict, vendor_lookup: Optional[Callable[[str], Optional[str]]] = None,
                 scanner: Optional[NetworkScanner] = None, onvif_client: Optional[OnvifClient] = None,
                 engine: Optional[RtspDiscoveryEngine] = None, analyzer: Optional[StreamAnalyzer] = None):
        self.config = config
        self.vendor_lookup = vendor_lookup
        self.credentials: List[Credential] = [Credential.from_dict(c) for c in config.get('credentials', [])]

        network = config['network']
        rtsp = config['rtsp']
        processing = config['processing']

        self.port_scan_mode = network.get('port_scan', 'always')
        self.ip_ranges = network.get('ip_ranges', [])
        self.onvif_enabled = config['onvif'].get('enabled', True)
        self.nvr_max_channels = rtsp.get('nvr_max_channels', 64)
        self.nvr_consecutive_failures = rtsp.get('nvr_consecutive_failures', 3)
        self.max_concurrent_devices = processing.get('max_concurrent_devices', 8)
        self.shutdown_timeout = processing.get('shutdown_timeout', 10.0)

        self.scanner = scanner or NetworkScanner(network, vendor_lookup=vendor_lookup)
        self.onvif = onvif_client or OnvifClient(config['onvif'])
        self.smart_cache = SmartCache()
        self.engine = engine or self._build_engine(rtsp)

        if analyzer is not None:
            self.analyzer = analyzer
        elif config['analysis'].get('enabled', True):
            self.analyzer = StreamAnalyzer.from_config(config['analysis'])
        else:
            self.analyzer = None

        self.device_pool = WorkerPool("device", self.max_concurrent_devices)
        self.background_pool = WorkerPool("background", processing.get('background_threads', 4))
        self._cancelled = False

    def _build_engine(self, rtsp: Dict) -> RtspDiscoveryEngine:
        method = ValidationMethod.from_name(rtsp.get('validation_method', 'frame_capture'))
        options = {}
        if method == ValidationMethod.RTP_PACKET:
            options = {
                'packet_window': rtsp.get('rtp_packet_window', 2.0),
                'min_packets': rtsp.get('rtp_min_packets', 5),
            }
        validator = create_validator(method, rtsp.get('timeout') or None, **options)
        logger.info(f"RTSP validation method: {method.label} (timeout {validator.timeout}s)")
        return RtspDiscoveryEngine(
            validator,
            templates=TemplateStore.load(rtsp.get('templates_file')),
            smart_cache=self.smart_cache,
            custom_paths=rtsp.get('custom_paths', []),
        )

    async def _run_blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.device_pool.executor, functools.partial(fn, *args))

    # ================== DISCOVERY PHASES ==================

    async def discover_devices(self, ip_list: Optional[List[str]] = None,
                               progress_callback: Optional[ProgressCallback] = None) -> List[Device]:
        """WS-Discovery, then port scan, then merge"""
        multicast_devices: List[Device] = []
        if self.onvif_enabled:
            multicast_devices = await self._run_blocking(self.onvif.discover_devices)
            logger.info(f"[WS-DISCOVERY PHASE] Found {len(multicast_devices)} ONVIF devices")

        scanned_devices: List[Device] = []
        run_scan = self.port_scan_mode == 'always' or (
            self.port_scan_mode == 'auto' and not multicast_devices)
        if run_scan and not self._cancelled:
            ips = ip_list if ip_list is not None else generate_ip_list(self.ip_ranges)
            if ips:
                scanned_devices = await self._run_blocking(self.scanner.scan, ips, progress_callback)
                logger.info(f"[SCAN PHASE] Found {len(scanned_devices)} devices with open ports")
            else:
                logger.info("[SCAN PHASE] No IP ranges configured, skipping port scan")

        devices = merge_device_lists(multicast_devices, scanned_devices)
        for device in multicast_devices:
            if not device.mac and not self._cancelled:
                device.mac = await self._run_blocking(self.scanner.resolve_mac, device.ip)
        if self.vendor_lookup:
            for device in devices:
                if device.mac and not device.manufacturer:
                    device.manufacturer = self.vendor_lookup(device.mac)
        logger.info(f"[MERGE] {len(devices)} unique devices")
        return devices

    async def run(self, ip_list: Optional[List[str]] = None,
                  progress_callback: Optional[ProgressCallback] = None) -> DiscoveryResult:
        """Full pass: discover devices, resolve streams, analyze them"""
        logger.info("[LAUNCH] Starting CCTV discovery...")
        start_time = time.time()
        self._cancelled = False
        self.scanner.reset()

        devices = await self.discover_devices(ip_list, progress_callback)
        await self.process_devices(devices)

        learned = self.smart_cache.snapshot()
        if learned:
            summary = ", ".join(f"{prefix}={paths[0]}" for prefix, paths in learned.items())
            logger.info(f"[CACHE] Learned paths for {len(learned)} MAC prefixes: {summary}")

        success_count = sum(1 for d in devices if d.status == DeviceStatus.COMPLETED)
        duration = time.time() - start_time
        logger.info(f"[PASS] Discovery finished: {success_count}/{len(devices)} devices with streams "
                    f"in {duration:.1f}s")
        method = "ws_discovery+tcp_scan" if self.port_scan_mode != 'never' else "ws_discovery"
        return DiscoveryResult(devices, method, duration, len(devices), success_count)

    async def process_devices(self, devices: List[Device]) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrent_devices)

        async def process(device: Device):
            async with semaphore:
                if self._cancelled:
                    return
                await self.authenticate_and_discover(device)
                if self.analyzer and device.streams:
                    await self._run_blocking(self.analyzer.analyze_device, device)

        await asyncio.gather(*(process(device) for device in devices))

    # ================== PER DEVICE ==================

    async def authenticate_and_discover(self, device: Device) -> Device:
        """Never raises: the device always ends Completed or AuthFailed with a reason"""
        device.status = DeviceStatus.AUTHENTICATING
        logger.info(f"[AUTH] Processing {device.ip} (onvif={device.onvif_service_url or device.onvif_ports}, "
                    f"rtsp={device.rtsp_ports}, nvr={device.is_nvr})")
        onvif_ok = False
        try:
            onvif_ok = await self._attempt_onvif(device)

            if not onvif_ok or not device.streams:
                await self._run_blocking(self._attempt_rtsp, device)

            if device.is_nvr and device.credential is not None:
                await self._run_blocking(self._iterate_nvr, device)

            self._finish(device, onvif_ok)
        except Exception as e:
            logger.error(f"Discovery failed for {device.ip}: {e}")
            device.status = DeviceStatus.AUTH_FAILED
            device.error = f"Discovery error: {e}"
        return device

    async def _attempt_onvif(self, device: Device) -> bool:
        if not self.onvif_enabled:
            return False

        authenticated: Optional[Credential] = None
        if device.onvif_service_url:
            for credential in self.credentials:
                if await self.onvif.get_device_information(device, credential):
                    authenticated = credential
                    break
            if authenticated is None and device.onvif_ports:
                logger.info(f"[AUTH] Advertised ONVIF URL rejected for {device.ip}, "
                            f"trying ports {device.onvif_ports}")

        if authenticated is None:
            for port in device.onvif_ports:
                for credential in self.credentials:
                    if await self.onvif.discover_device_by_port(device, port, credential):
                        authenticated = credential
                        break
                if authenticated:
                    break

        if authenticated is None:
            return False

        device.set_credential(authenticated)
        sources = await self.onvif.get_video_sources(device, authenticated)
        if len(sources) > 1:
            logger.info(f"[NVR] {device.ip} reports {len(sources)} video sources")
            device.is_nvr = True
        return True

    def _attempt_rtsp(self, device: Device) -> bool:
        """Credentials strictly in order; the ONVIF credential, if any, goes first"""
        ordered = list(self.credentials)
        if device.credential is not None:
            ordered = [device.credential] + [c for c in ordered if c != device.credential]
        if not ordered:
            ordered = [None]

        for credential in ordered:
            streams = self.engine.discover_streams(device, credential)
            if streams:
                if credential is not None:
                    device.set_credential(credential)
                device.add_streams(streams)
                return True
        return False

    def _iterate_nvr(self, device: Device) -> None:
        streams = self.engine.iterate_nvr_channels(device, device.credential, self.nvr_max_channels,
                                                   self.nvr_consecutive_failures)
        known = {stream.url for stream in device.streams}
        device.add_streams([s for s in streams if s.url not in known])

    def _finish(self, device: Device, onvif_ok: bool) -> None:
        if device.streams:
            device.status = DeviceStatus.COMPLETED
            device.error = None
            device.auth_failed = False
            logger.info(f"[PASS] {device.ip}: {len(device.streams)} streams")
            return

        device.status = DeviceStatus.AUTH_FAILED
        if not device.onvif_service_url and not device.rtsp_ports and not onvif_ok:
            device.error = ERROR_UNKNOWN_DEVICE
            device.auth_failed = False
        else:
            device.error = ERROR_AUTH_FAILED
            device.auth_failed = True
        logger.info(f"[FAIL] {device.ip}: {device.error}")

    # ================== LIFECYCLE ==================

    def submit_background(self, fn: Callable, *args, **kwargs) -> Future:
        """Schedule a one-off task on the engine-owned pool"""
        return self.background_pool.submit(fn, *args, **kwargs)

    def cancel(self) -> None:
        logger.info("Discovery cancelled")
        self._cancelled = True
        self.scanner.cancel()

    def shutdown(self) -> None:
        self.device_pool.shutdown(self.shutdown_timeout)
        self.background_pool.shutdown(self.shutdown_timeout)
        if self.analyzer:
            self.analyzer.shutdown(self.shutdown_timeout)
