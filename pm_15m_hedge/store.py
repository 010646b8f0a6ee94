"""
Persistence - JSON state snapshots and the CSV trade journal.

Snapshots are written to a temp file and moved into place, so a crash
mid-write leaves the previous snapshot intact. Write failures are logged
and reported to the caller as False; they never stop the trading loop.
"""

import csv
import json
import logging
import os
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2, default=str)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def read_json(path: Path) -> Optional[dict]:
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {path}: {e}")
        return None


class StateStore:
    """Tracker and window snapshots under one directory."""

    def __init__(self, directory: str, tracker_file: str = "tracker_state.json",
                 window_file: str = "window_state.json"):
        self.directory = Path(directory)
        self.tracker_path = self.directory / tracker_file
        self.window_path = self.directory / window_file
        self.write_errors = 0

    def _save(self, path: Path, data: dict) -> bool:
        try:
            write_json_atomic(path, data)
            return True
        except (OSError, TypeError, ValueError) as e:
            self.write_errors += 1
            logger.error(f"Failed to save {path}: {e}")
            return False

    def save_tracker(self, data: dict) -> bool:
        return self._save(self.tracker_path, data)

    def load_tracker(self) -> Optional[dict]:
        return read_json(self.tracker_path)

    def save_window(self, data: dict) -> bool:
        return self._save(self.window_path, data)

    def load_window(self) -> Optional[dict]:
        return read_json(self.window_path)


class TradeJournal:
    """One CSV row per resolved position."""

    FIELDS = [
        "timestamp", "market_id", "direction", "outcome", "result", "strategy",
        "entry_price", "opposite_price", "combined_price", "cost", "pnl",
        "price_to_beat", "resolved_price", "move_pct", "overreaction", "streak",
        "order_id", "note",
    ]

    def __init__(self, path: str):
        self.path = Path(path)
        self.write_errors = 0

    def append(self, row: dict) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            with open(self.path, "a", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=self.FIELDS, extrasaction="ignore")
                if new_file:
                    writer.writeheader()
                writer.writerow(row)
            return True
        except OSError as e:
            self.write_errors += 1
            logger.error(f"Trade journal write failed ({self.path}): {e}")
            return False

    def read_rows(self) -> List[dict]:
        if not self.path.exists():
            return []
        with open(self.path, newline="") as f:
            return list(csv.DictReader(f))
