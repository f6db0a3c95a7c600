"""
State kept between runs: the cursor of stepped runs and how often each
article has been missing from the catalog.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_SKIP_WARNING_THRESHOLD = 3

FLOW_TARGETS = "targets"
FLOW_CACHE = "cache"


def _empty_state() -> Dict[str, Any]:
    return {"cursor": 0, "misses": {}}


class StateStore:
    """
    Schema:
    {
      "cursor": 0,
      "misses": {
        "targets": { "www.borger.dk_42": 2 },
        "cache": { "www.borger.dk_42": 1 }
      }
    }

    A missing or unreadable state file starts from an empty state. Miss
    counts not kept per flow are dropped on load.
    """
    def __init__(self, path: Optional[Union[str, Path]] = None,
                 skip_warning_threshold: int = DEFAULT_SKIP_WARNING_THRESHOLD):
        self.path = Path(path) if path else None
        self.skip_warning_threshold = skip_warning_threshold
        self.state = self.load()

    def load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return _empty_state()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("state is not a JSON object")
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return _empty_state()
        data.setdefault("cursor", 0)
        misses = data.get("misses")
        data["misses"] = {
            flow: counts for flow, counts in (misses.items() if isinstance(misses, dict) else [])
            if isinstance(counts, dict)
        }
        return data

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.state, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    @property
    def cursor(self) -> int:
        return int(self.state.get("cursor") or 0)

    @cursor.setter
    def cursor(self, value: int) -> None:
        self.state["cursor"] = value

    def _flow_misses(self, flow: str) -> Dict[str, int]:
        return self.state.setdefault("misses", {}).setdefault(flow, {})

    def record_miss(self, catalog_key: str, flow: str = FLOW_TARGETS) -> bool:
        """
        Record that an article was not in the catalog.

        Each flow keeps its own count, so running both flows on the same day
        counts as one run of each.

        Args:
            catalog_key: The catalog key of the article
            flow: The run the miss was seen in

        Returns:
            True once the article has been missing for the warning threshold
            of consecutive runs of this flow
        """
        misses = self._flow_misses(flow)
        count = int(misses.get(catalog_key, 0)) + 1
        misses[catalog_key] = count
        if count >= self.skip_warning_threshold:
            logger.warning(
                f"Article {catalog_key} has been missing from the catalog "
                f"{count} {flow} runs in a row; it may have been removed from borger.dk"
            )
            return True
        logger.info(f"Article {catalog_key} is not in the catalog, skipping it")
        return False

    def clear_miss(self, catalog_key: str) -> None:
        """Reset the counts of every flow once an article is back in the catalog."""
        cleared = False
        for misses in self.state.setdefault("misses", {}).values():
            if misses.pop(catalog_key, None):
                cleared = True
        if cleared:
            logger.info(f"Article {catalog_key} is back in the catalog")

    def misses(self, catalog_key: str, flow: str = FLOW_TARGETS) -> int:
        return int(self.state.get("misses", {}).get(flow, {}).get(catalog_key, 0))
