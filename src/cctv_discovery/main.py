"""
CCTV Discovery - Main Entry Point
"""

import argparse
import asyncio
import json
import signal
import sys
import logging
from pathlib import Path
import os
from typing import List, Optional

import yaml

from .config_loader import get_sample_config, load_config, setup_logging
from .discovery.manager import DiscoveryManager
from .discovery.models import DiscoveryResult

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discover IP cameras and resolve their RTSP streams")
    parser.add_argument('--config', help="YAML configuration file (default: $CONFIG_FILE or config/config.yaml)")
    parser.add_argument('--ip', action='append', dest='ip_ranges',
                        help="IP, range (a.b.c.d-e) or CIDR to scan; repeatable, overrides config")
    parser.add_argument('--method', choices=['sdp_only', 'rtp_packet', 'frame_capture'],
                        help="Stream validation method, overrides config")
    parser.add_argument('--output', help="Write results as JSON to this file")
    parser.add_argument('--sample-config', action='store_true',
                        help="Print a sample YAML configuration and exit")
    return parser.parse_args(argv)


def log_summary(result: DiscoveryResult) -> None:
    logger.info("=" * 60)
    logger.info(f"Devices: {len(result.devices)}  with streams: {result.success_count}  "
                f"time: {result.duration_seconds:.1f}s")
    for device in result.devices:
        identity = " ".join(filter(None, [device.manufacturer, device.model])) or "unknown"
        logger.info(f"{device.ip:<15} {identity:<30} {device.status.value:<14} "
                    f"{device.error or ''}")
        for stream in device.streams:
            details = ", ".join(filter(None, [stream.resolution, stream.codec,
                                              f"{stream.bitrate_kbps}kbps" if stream.bitrate_kbps else None]))
            logger.info(f"    {stream.name:<10} {stream.url}  {details}")
            for issue in stream.compliance_issues:
                logger.info(f"        ! {issue}")
    logger.info("=" * 60)


def write_results(result: DiscoveryResult, output_file: str) -> None:
    path = Path(output_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        'method': result.method,
        'duration_seconds': round(result.duration_seconds, 2),
        'devices': [device.to_dict() for device in result.devices],
    }
    path.write_text(json.dumps(payload, indent=2))
    logger.info(f"Results written to {path}")


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    if args.sample_config:
        print(yaml.safe_dump(get_sample_config(), sort_keys=False))
        return 0

    # Get config file path from CLI, environment variable or default
    config_path = args.config or os.environ.get('CONFIG_FILE', 'config/config.yaml')
    config = load_config(config_path)
    if args.ip_ranges:
        config['network']['ip_ranges'] = args.ip_ranges
    if args.method:
        config['rtsp']['validation_method'] = args.method
    setup_logging(config)
    logger.info(f"Using configuration file: {config_path}")

    manager = None

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping discovery...")
        if manager:
            manager.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        manager = DiscoveryManager(config)
        result = await manager.run()
        log_summary(result)

        output_file = args.output or config['output'].get('results_file')
        if output_file:
            write_results(result, output_file)

    except Exception as e:
        logger.error(f"Discovery failed: {e}")
        return 1
    finally:
        if manager:
            manager.shutdown()

    return 0


def run() -> None:
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nDiscovery stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
