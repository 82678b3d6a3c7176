"""
RTSP stream discovery: path waterfall, validation and NVR channel enumeration
"""

from .engine import RtspDiscoveryEngine, guess_substream_path
from .sdp import SessionDescription, parse_sdp
from .smart_cache import SmartCache
from .templates import PathTemplate, TemplateStore
from .validators import (ValidationMethod, ValidationOutcome, ValidationResult, StreamValidator,
                         SdpValidator, RtpPacketValidator, FrameCaptureValidator, create_validator)

__all__ = [
    'RtspDiscoveryEngine', 'guess_substream_path',
    'SessionDescription', 'parse_sdp',
    'SmartCache', 'PathTemplate', 'TemplateStore',
    'ValidationMethod', 'ValidationOutcome', 'ValidationResult', 'StreamValidator',
    'SdpValidator', 'RtpPacketValidator', 'FrameCaptureValidator', 'create_validator',
]
