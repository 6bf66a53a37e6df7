"""
Loads the configured set of keys the refresh trigger keeps warm.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from shared.errors import ValidationError
from shared.logging import get_logger

from ..models.requests import DataRequest


DEFAULT_DATA_FILE = Path(__file__).resolve().parent.parent / "data" / "refresh_keys.json"


class RefreshKeyLoader:
    """
    Reads refresh key definitions from a JSON file.

    The file holds ``{"keys": [{"dataset_class": ..., "asset_id": ...,
    "currency": ..., "interval": ..., "range": ...}, ...]}``. A missing or
    malformed file yields an empty key set; invalid entries are skipped.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self._path = Path(config_path) if config_path else DEFAULT_DATA_FILE
        self.logger = get_logger("marketdata.refresh.keys")
        self._lock = threading.Lock()
        self._requests = self._load()

    @property
    def path(self) -> Path:
        """Return the resolved path to the data file."""
        return self._path

    def refresh(self) -> None:
        """Reload the key set from disk."""
        with self._lock:
            self._requests = self._load()

    def requests(self) -> List[DataRequest]:
        with self._lock:
            return list(self._requests)

    def _load(self) -> List[DataRequest]:
        payload = self._read()
        entries = payload.get("keys", [])
        if not isinstance(entries, list):
            self.logger.warning("Refresh key file has no key list", path=str(self._path))
            return []

        requests: List[DataRequest] = []
        seen = set()
        for entry in entries:
            if not isinstance(entry, dict):
                self.logger.warning("Skipping refresh key entry", entry=entry, error="not an object")
                continue
            try:
                request = DataRequest.from_dict(entry)
            except ValidationError as exc:
                self.logger.warning("Skipping refresh key entry", entry=entry, error=exc.message)
                continue
            if request.cache_key() in seen:
                continue
            seen.add(request.cache_key())
            requests.append(request)
        return requests

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            self.logger.warning("Refresh key file not found; refresh will no-op", path=str(self._path))
            return {}

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (ValueError, OSError) as exc:
            self.logger.warning("Failed to parse refresh key file", path=str(self._path), error=str(exc))
            return {}

        return data if isinstance(data, dict) else {}
