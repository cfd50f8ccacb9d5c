"""Hand-maintained SendPulse MQL counts for months without live data.

The file maps year -> two-digit month -> count, e.g.
``{"2025": {"01": 42, "02": 37}}``. Non-numeric values are ignored.
"""

from __future__ import annotations

import json
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


class SendpulseBaseline:
    def __init__(self, table: dict[str, dict[str, int | float]] | None = None) -> None:
        self._table = table or {}

    @classmethod
    def load(cls, path: str | Path) -> SendpulseBaseline:
        file_path = Path(path)
        if not file_path.exists():
            logger.warning("baseline.file_missing", path=str(file_path))
            return cls({})
        with file_path.open(encoding="utf-8") as fh:
            return cls(json.load(fh))

    def value(self, year: int, month_key: str) -> int | float | None:
        """Baseline count for ``"YYYY-MM"`` as stored in the file, or None."""
        raw = (self._table.get(str(year)) or {}).get(month_key[5:7])
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return None
        return raw
