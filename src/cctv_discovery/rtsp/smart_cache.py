"""
Per-run cache of RTSP paths that worked, keyed by MAC prefix
"""

import threading
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class SmartCache:
    """Append-only, thread-safe map of MAC prefix -> confirmed paths"""

    def __init__(self):
        self._paths: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    def add(self, prefix: Optional[str], path: str) -> None:
        if not prefix or not path:
            return
        with self._lock:
            self._paths.setdefault(prefix, []).append(path)
        logger.debug(f"Smart cache: {prefix} -> {path}")

    def get(self, prefix: Optional[str]) -> List[str]:
        if not prefix:
            return []
        with self._lock:
            return list(self._paths.get(prefix, []))

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {prefix: list(paths) for prefix, paths in self._paths.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def __contains__(self, prefix) -> bool:
        with self._lock:
            return prefix in self._paths
