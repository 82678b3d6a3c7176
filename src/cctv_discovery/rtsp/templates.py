"""
Vendor RTSP path tables and NVR channel templates

Templates are loaded once from a YAML resource. Any section that is missing,
empty or malformed falls back to the built-in tables below.
"""

import re
import logging
from pathlib import Path
from importlib import resources
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)

GENERIC = "GENERIC"

# Placeholder name -> channel formatter
PLACEHOLDERS: Tuple[Tuple[str, Callable[[int], str]], ...] = (
    ("channel", lambda c: str(c)),
    ("channel01", lambda c: f"{c:02d}"),
    ("channel*100+1", lambda c: str(c * 100 + 1)),
    ("channel*100+2", lambda c: str(c * 100 + 2)),
    ("channel+100", lambda c: str(c + 100)),
)
_PLACEHOLDER_TABLE = dict(PLACEHOLDERS)
_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")

DEFAULT_VENDOR_PATHS: Dict[str, List[str]] = {
    "HIKVISION": [
        "/Streaming/Channels/101",
        "/Streaming/Channels/102",
        "/h264/ch1/main/av_stream",
        "/h264/ch1/sub/av_stream",
    ],
    "DAHUA": [
        "/cam/realmonitor?channel=1&subtype=0",
        "/cam/realmonitor?channel=1&subtype=1",
        "/live/ch00_0",
        "/live/ch00_1",
    ],
    "AXIS": [
        "/axis-media/media.amp",
        "/axis-media/media.amp?videocodec=h264",
        "/mpeg4/media.amp",
    ],
    "CP_PLUS": [
        "/cam/realmonitor?channel=1&subtype=0",
        "/cam/realmonitor?channel=1&subtype=1",
    ],
    GENERIC: [
        "/live",
        "/live/0",
        "/live/1",
        "/ch0",
        "/ch01",
        "/stream1",
        "/stream2",
        "/video.mjpg",
        "/h264",
    ],
}


def normalize_vendor(name: Optional[str]) -> str:
    if not name:
        return ""
    return name.strip().upper().replace(' ', '_')


def render_path(pattern: str, channel: int) -> str:
    """Substitute {placeholder} tokens by name; unknown tokens are left as-is"""
    def _substitute(match):
        formatter = _PLACEHOLDER_TABLE.get(match.group(1).replace(' ', ''))
        if formatter is None:
            logger.warning(f"Unknown path placeholder {match.group(0)} in '{pattern}'")
            return match.group(0)
        return formatter(channel)
    return _PLACEHOLDER_RE.sub(_substitute, pattern)


@dataclass(frozen=True)
class PathTemplate:
    """Main/sub path pattern for one NVR family"""
    main: str
    sub: str

    def main_path(self, channel: int) -> str:
        return render_path(self.main, channel)

    def sub_path(self, channel: int) -> str:
        return render_path(self.sub, channel)


def _default_nvr_templates() -> Dict[str, PathTemplate]:
    hikvision = PathTemplate("/Streaming/Channels/{channel*100+1}", "/Streaming/Channels/{channel*100+2}")
    dahua = PathTemplate("/cam/realmonitor?channel={channel}&subtype=0",
                         "/cam/realmonitor?channel={channel}&subtype=1")
    uniview = PathTemplate("/media/video{channel}", "/media/video{channel+100}")
    return {
        "HIKVISION": hikvision,
        "HIK": hikvision,
        "DAHUA": dahua,
        "CP_PLUS": dahua,
        "AMCREST": dahua,
        "UNIVIEW": uniview,
        "UNV": uniview,
        GENERIC: PathTemplate("/ch{channel01}/0", "/ch{channel01}/1"),
    }


class TemplateStore:
    """Immutable-after-load vendor path and NVR template tables"""

    def __init__(self, vendor_paths: Optional[Dict[str, List[str]]] = None,
                 nvr_templates: Optional[Dict[str, PathTemplate]] = None):
        self._vendor_paths = {normalize_vendor(k): list(v)
                              for k, v in (vendor_paths or DEFAULT_VENDOR_PATHS).items()}
        self._nvr_templates = {normalize_vendor(k): v
                               for k, v in (nvr_templates or _default_nvr_templates()).items()}
        if GENERIC not in self._vendor_paths:
            self._vendor_paths[GENERIC] = list(DEFAULT_VENDOR_PATHS[GENERIC])
        if GENERIC not in self._nvr_templates:
            self._nvr_templates[GENERIC] = _default_nvr_templates()[GENERIC]

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'TemplateStore':
        """Load from a YAML file, or the bundled resource when path is None"""
        data = None
        source = path or "bundled rtsp_templates.yaml"
        try:
            if path:
                text = Path(path).read_text(encoding='utf-8')
            else:
                text = resources.files('cctv_discovery.resources').joinpath(
                    'rtsp_templates.yaml').read_text(encoding='utf-8')
            data = yaml.safe_load(text)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read RTSP templates from {source}: {e} - using built-in defaults")
            return cls()

        if not isinstance(data, dict) or not data:
            logger.warning(f"RTSP templates in {source} are empty - using built-in defaults")
            return cls()

        vendor_paths = cls._parse_vendor_paths(data.get('manufacturers'), source)
        nvr_templates = cls._parse_nvr_templates(data.get('nvr'), source)
        store = cls(vendor_paths, nvr_templates)
        logger.info(f"Loaded RTSP templates from {source}: {len(store._vendor_paths)} vendors, "
                    f"{len(store._nvr_templates)} NVR aliases")
        return store

    @staticmethod
    def _parse_vendor_paths(section, source: str) -> Optional[Dict[str, List[str]]]:
        if not isinstance(section, dict) or not section:
            logger.warning(f"No 'manufacturers' section in {source} - using built-in vendor paths")
            return None
        paths = {}
        for vendor, entries in section.items():
            if isinstance(entries, str):
                entries = [p.strip() for p in entries.split(',')]
            if not isinstance(entries, list):
                logger.warning(f"Ignoring malformed path list for {vendor} in {source}")
                continue
            cleaned = [str(p).strip() for p in entries if str(p).strip()]
            if cleaned:
                paths[normalize_vendor(str(vendor))] = cleaned
        return paths or None

    @staticmethod
    def _parse_nvr_templates(section, source: str) -> Optional[Dict[str, PathTemplate]]:
        if not isinstance(section, dict) or not section:
            logger.warning(f"No 'nvr' section in {source} - using built-in NVR templates")
            return None
        templates = {}
        for vendor, entry in section.items():
            if not isinstance(entry, dict) or not entry.get('main') or not entry.get('sub'):
                logger.warning(f"Ignoring malformed NVR template for {vendor} in {source}")
                continue
            template = PathTemplate(str(entry['main']).strip(), str(entry['sub']).strip())
            templates[normalize_vendor(str(vendor))] = template
            for alias in entry.get('aliases') or []:
                templates[normalize_vendor(str(alias))] = template
        return templates or None

    @property
    def vendors(self) -> List[str]:
        return [v for v in self._vendor_paths if v != GENERIC]

    @property
    def generic_paths(self) -> List[str]:
        return list(self._vendor_paths[GENERIC])

    def paths_for(self, manufacturer: Optional[str]) -> List[str]:
        key = normalize_vendor(manufacturer)
        if not key or key == GENERIC:
            return []
        return list(self._vendor_paths.get(key, []))

    def nvr_template_for(self, manufacturer: Optional[str]) -> PathTemplate:
        """Exact alias match, then substring match either way, then the generic template"""
        key = normalize_vendor(manufacturer)
        if key:
            if key in self._nvr_templates:
                return self._nvr_templates[key]
            for alias, template in self._nvr_templates.items():
                if alias == GENERIC:
                    continue
                if alias in key or key in alias:
                    return template
        return self._nvr_templates[GENERIC]
