"""
Frame grabber built on PyAV (FFmpeg)
Low latency RTSP-over-TCP options for confirming and measuring streams
"""

import time
import logging
from typing import Dict, Optional

import av

from ..discovery.models import Credential
from ..transport import embed_credentials

logger = logging.getLogger(__name__)

# Errors that mean "could not open/decode this URL"
GRABBER_ERRORS = (av.error.FFmpegError, OSError)


def grabber_options(timeout: float) -> Dict[str, str]:
    """FFmpeg demuxer options: TCP transport, no buffering or reordering"""
    return {
        'rtsp_transport': 'tcp',
        'timeout': str(int(timeout * 1_000_000)),   # socket I/O timeout, microseconds
        'max_delay': '500000',
        'reorder_queue_size': '0',
        'fflags': 'nobuffer',
        'flags': 'low_delay',
    }


def open_stream(url: str, timeout: float = 10.0, credential: Optional[Credential] = None):
    """Open an RTSP URL with PyAV. Caller closes the returned container."""
    return av.open(
        embed_credentials(url, credential),
        options=grabber_options(timeout),
        timeout=timeout
    )


def grab_frame(url: str, timeout: float = 10.0, credential: Optional[Credential] = None) -> bool:
    """True once one video frame decodes. Raises GRABBER_ERRORS on connection failure."""
    container = open_stream(url, timeout, credential)
    try:
        video_stream = next((s for s in container.streams if s.type == 'video'), None)
        if video_stream is None:
            logger.debug(f"No video stream in {url}")
            return False
        deadline = time.monotonic() + timeout
        for packet in container.demux(video_stream):
            for _frame in packet.decode():
                return True
            if time.monotonic() > deadline:
                logger.debug(f"No decodable frame from {url} within {timeout}s")
                break
        return False
    finally:
        container.close()
