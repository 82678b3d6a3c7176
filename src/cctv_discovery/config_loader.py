"""
Configuration loader for the CCTV discovery engine
Loads and validates configuration from YAML files, falling back to built-in defaults
"""

import copy
import yaml
import logging
from typing import Dict, Any, List, Tuple
from pathlib import Path
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

VALIDATION_METHODS = ('sdp_only', 'rtp_packet', 'frame_capture')
PORT_SCAN_MODES = ('always', 'auto', 'never')

DEFAULT_CONFIG: Dict[str, Any] = {
    'network': {
        'ip_ranges': [],
        'ports': [80, 8080, 554, 8554, 443, 8443, 8000, 8888, 37777, 34567],
        'connect_timeout': 2.0,
        'scan_thread_multiplier': 8,
        'scan_max_threads': 64,
        'port_scan': 'always',
        'resolve_mac': True,
    },
    'onvif': {
        'enabled': True,
        'multicast_address': '239.255.255.250',
        'port': 3702,
        'discovery_timeout': 5.0,
        'connect_timeout': 5.0,
        'request_timeout': 10.0,
    },
    'credentials': [
        {'username': 'admin', 'password': 'admin'},
    ],
    'max_credentials': 4,
    'rtsp': {
        'validation_method': 'frame_capture',
        'timeout': 0,                   # 0 = default for the validation method
        'nvr_max_channels': 64,
        'nvr_consecutive_failures': 3,
        'custom_paths': [],
        'templates_file': None,
        'rtp_packet_window': 2.0,
        'rtp_min_packets': 5,
    },
    'analysis': {
        'enabled': True,
        'max_threads': 8,
        'duration_seconds': 10,
        'frame_samples': 30,
        'open_timeout': 5.0,
        'compliance': {
            'flag_high_profile': True,
            'sub_min_height': 360,
            'sub_max_height': 480,
            'sub_required_codec': 'H.264',
            'sub_max_bitrate_kbps': 512,
        },
    },
    'processing': {
        'max_concurrent_devices': 8,
        'background_threads': 4,
        'shutdown_timeout': 10.0,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'console_output': True,
        'timezone': 'UTC',
    },
    'output': {
        'results_file': None,
    },
}


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation.
    A missing, empty or malformed file is not fatal: built-in defaults are used.
    """
    config_file = Path(config_path)
    config: Dict[str, Any] = {}

    if not config_file.exists():
        logger.warning(f"Configuration file not found: {config_path} - using built-in defaults")
    else:
        try:
            with open(config_file, 'r') as f:
                loaded = yaml.safe_load(f)
            if loaded is None:
                logger.warning(f"Configuration file {config_path} is empty - using built-in defaults")
            elif not isinstance(loaded, dict):
                logger.warning(f"Configuration file {config_path} is not a mapping - using built-in defaults")
            else:
                config = loaded
                logger.info(f"Configuration loaded from {config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to parse configuration {config_path}: {e} - using built-in defaults")

    config = _apply_defaults(config)
    _validate_config(config)
    return config


def _validate_config(config: Dict) -> None:
    """Replace invalid values with defaults, logging each correction"""
    rtsp = config['rtsp']
    method = str(rtsp.get('validation_method', '')).strip().lower()
    if method not in VALIDATION_METHODS:
        logger.warning(f"Unknown rtsp.validation_method '{rtsp.get('validation_method')}' "
                       f"- using {DEFAULT_CONFIG['rtsp']['validation_method']}")
        method = DEFAULT_CONFIG['rtsp']['validation_method']
    rtsp['validation_method'] = method

    try:
        rtsp['timeout'] = float(rtsp.get('timeout') or 0)
    except (TypeError, ValueError):
        rtsp['timeout'] = 0.0
    if rtsp['timeout'] < 0:
        logger.warning("rtsp.timeout must not be negative - using the method default")
        rtsp['timeout'] = 0.0

    rtsp['custom_paths'] = _parse_custom_paths(rtsp.get('custom_paths'))

    network = config['network']
    if network.get('port_scan') not in PORT_SCAN_MODES:
        logger.warning(f"Unknown network.port_scan '{network.get('port_scan')}' - using 'always'")
        network['port_scan'] = 'always'
    if not network.get('ports'):
        network['ports'] = list(DEFAULT_CONFIG['network']['ports'])

    credentials = config.get('credentials') or []
    valid = [c for c in credentials if isinstance(c, dict) and 'username' in c]
    if len(valid) != len(credentials):
        logger.warning(f"Ignoring {len(credentials) - len(valid)} malformed credential entries")
    max_credentials = config.get('max_credentials', 4)
    if len(valid) > max_credentials:
        logger.warning(f"Only the first {max_credentials} credentials will be tried")
        valid = valid[:max_credentials]
    config['credentials'] = valid

    level = str(config['logging'].get('level', 'INFO')).upper()
    if not isinstance(logging.getLevelName(level), int):
        logger.warning(f"Unknown logging level '{level}' - using INFO")
        level = 'INFO'
    config['logging']['level'] = level


def _parse_custom_paths(entries) -> List[Tuple[str, str]]:
    """
    Accepts [{main: .., sub: ..}, ...], [[main, sub], ...] or the flat
    'main1;sub1;main2;sub2' string form
    """
    if not entries:
        return []
    if isinstance(entries, str):
        parts = [p.strip() for p in entries.split(';') if p.strip()]
        if len(parts) % 2 != 0:
            logger.warning("rtsp.custom_paths must contain main;sub pairs - ignoring")
            return []
        return list(zip(parts[0::2], parts[1::2]))

    pairs = []
    for entry in entries:
        if isinstance(entry, dict) and entry.get('main') and entry.get('sub'):
            pairs.append((str(entry['main']), str(entry['sub'])))
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            pairs.append((str(entry[0]), str(entry[1])))
        else:
            logger.warning(f"Ignoring malformed custom path pair: {entry}")
    return pairs


def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""
    for section, defaults in DEFAULT_CONFIG.items():
        if isinstance(defaults, dict):
            if not isinstance(config.get(section), dict):
                config[section] = {}
            for key, default_value in defaults.items():
                if key not in config[section]:
                    config[section][key] = copy.deepcopy(default_value)
        elif section not in config:
            config[section] = copy.deepcopy(defaults)

    # Nested compliance thresholds
    compliance = config['analysis'].get('compliance')
    if not isinstance(compliance, dict):
        compliance = {}
    for key, default_value in DEFAULT_CONFIG['analysis']['compliance'].items():
        compliance.setdefault(key, default_value)
    config['analysis']['compliance'] = compliance

    return config


def get_default_config() -> Dict[str, Any]:
    return _apply_defaults({})


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a configured timezone"""

    def __init__(self, fmt=None, timezone: str = 'UTC'):
        super().__init__(fmt)
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            self.tz = pytz.utc

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')


def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with timezone-aware timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    timezone = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, timezone)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, tz={timezone}, "
                f"console={log_config.get('console_output', True)}, file={log_file}")


def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "network": {
            "ip_ranges": ["192.168.1.1-192.168.1.254"],
            "connect_timeout": 2.0,
            "port_scan": "always",
        },
        "onvif": {
            "enabled": True,
            "discovery_timeout": 5.0,
        },
        "credentials": [
            {"username": "admin", "password": "admin"},
            {"username": "admin", "password": "12345"},
        ],
        "rtsp": {
            "validation_method": "sdp_only",
            "nvr_max_channels": 16,
            "custom_paths": [
                {"main": "/live/main", "sub": "/live/sub"},
            ],
        },
        "analysis": {
            "enabled": True,
            "duration_seconds": 10,
        },
        "logging": {
            "level": "INFO",
            "file": "logs/cctv_discovery.log",
            "console_output": True,
            "timezone": "UTC",
        },
    }
