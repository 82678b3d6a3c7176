"""
CCTV discovery engine: finds IP cameras and recorders on a LAN, authenticates
against them and resolves their working RTSP stream URLs
"""

__version__ = "1.0.0"
