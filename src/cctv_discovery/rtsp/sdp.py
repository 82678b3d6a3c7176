"""
Minimal SDP (session description) parsing for stream validation
"""

import logging
from typing import List, Optional
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

KNOWN_VIDEO_CODECS = ('H264', 'H265', 'HEVC', 'MPEG4', 'MP4V', 'MJPEG', 'JPEG')


@dataclass
class MediaDescription:
    media_type: str
    line: str
    control: Optional[str] = None
    rtpmaps: List[str] = field(default_factory=list)


@dataclass
class SessionDescription:
    version: Optional[str] = None
    session_name: Optional[str] = None
    session_control: Optional[str] = None
    media: List[MediaDescription] = field(default_factory=list)

    @property
    def video(self) -> Optional[MediaDescription]:
        for media in self.media:
            if media.media_type == 'video':
                return media
        return None

    @property
    def is_valid(self) -> bool:
        """A usable description needs a v= line and at least one m=video line"""
        return self.version is not None and self.video is not None

    @property
    def codecs(self) -> List[str]:
        found = []
        for media in self.media:
            for rtpmap in media.rtpmaps:
                upper = rtpmap.upper()
                for codec in KNOWN_VIDEO_CODECS:
                    if codec in upper and codec not in found:
                        found.append(codec)
        return found

    def control_url(self, base_url: str) -> str:
        """Resolve the URL to SETUP for the video track"""
        video = self.video
        control = (video.control if video and video.control else None) or self.session_control
        if not control or control == '*':
            return base_url
        if control.lower().startswith('rtsp://'):
            return control
        if control.startswith('/'):
            return base_url.rstrip('/') + control
        return base_url.rstrip('/') + '/' + control


def parse_sdp(text: str) -> SessionDescription:
    sdp = SessionDescription()
    current: Optional[MediaDescription] = None

    for raw in (text or '').splitlines():
        line = raw.strip()
        if len(line) < 2 or line[1] != '=':
            continue
        kind, value = line[0], line[2:]

        if kind == 'v':
            sdp.version = value
        elif kind == 's':
            if value and value != '-':
                sdp.session_name = value
        elif kind == 'm':
            current = MediaDescription(media_type=value.split(' ', 1)[0].lower(), line=value)
            sdp.media.append(current)
        elif kind == 'a':
            if value.startswith('control:'):
                control = value[len('control:'):].strip()
                if current is None:
                    sdp.session_control = control
                else:
                    current.control = control
            elif value.startswith('rtpmap:') and current is not None:
                current.rtpmaps.append(value[len('rtpmap:'):].strip())

    return sdp

