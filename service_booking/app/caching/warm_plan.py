"""
Loads the curated list of popular categories used for cache warming.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import threading


DEFAULT_POPULAR_CATEGORIES = [1, 2, 3, 4, 5]


class WarmPlanLoader:
    """
    Reads popular category ids from an optional JSON file.

    Expected shape::

        {"popular_categories": [292858, 292859], "max_categories": 10}

    A missing or malformed file degrades to the configured defaults so cache
    warming never fails on account of its plan.
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        default_categories: Optional[List[int]] = None,
    ):
        self._path = Path(config_path) if config_path else None
        self._defaults = list(default_categories or DEFAULT_POPULAR_CATEGORIES)
        self._lock = threading.Lock()
        self._data = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def refresh(self) -> None:
        """Reload the plan from disk."""
        with self._lock:
            self._data = self._load()

    def popular_categories(self, limit: Optional[int] = None) -> List[int]:
        """Return de-duplicated popular category ids in file order."""
        with self._lock:
            data = self._data

        raw_ids = data.get("popular_categories", self._defaults)
        resolved_limit = limit or data.get("max_categories")

        categories: List[int] = []
        for raw in raw_ids:
            try:
                category_id = int(raw)
            except (TypeError, ValueError):
                continue
            if category_id > 0 and category_id not in categories:
                categories.append(category_id)

        if resolved_limit:
            categories = categories[: int(resolved_limit)]
        return categories

    def _load(self) -> Dict[str, Any]:
        if self._path is None or not self._path.exists():
            return {"popular_categories": self._defaults}

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (ValueError, OSError):
            return {"popular_categories": self._defaults}

        if not isinstance(data, dict) or not isinstance(data.get("popular_categories"), list):
            return {"popular_categories": self._defaults}
        return data
