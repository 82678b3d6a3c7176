"""
ONVIF discovery and device queries
"""

from .client import OnvifClient, build_service_url
from .messages import ProbeMatch, build_probe, parse_probe_match

__all__ = ['OnvifClient', 'build_service_url', 'ProbeMatch', 'build_probe', 'parse_probe_match']
