"""
Result Sinks
============

Persist one row per finalized robot. Rows are only ever appended.
"""

import csv
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from .robot import Device, UnitRecord

logger = logging.getLogger(__name__)


def result_columns() -> List[str]:
    columns = ['date', 'seq_id', 'serial', 'hardware', 'firmware', 'software']
    for device in Device:
        columns.append(f"{device.name.lower()}_ok")
        columns.append(f"{device.name.lower()}_val")
    columns += ['state', 'result', 'diagnostics']
    return columns


def result_row(record: UnitRecord) -> Dict[str, str]:
    """Flatten a record into CSV-ready strings."""
    row = {
        'date': datetime.now().isoformat(timespec='seconds'),
        'seq_id': str(record.seq_id),
        'serial': record.serial,
        'hardware': record.hardware,
        'firmware': record.firmware,
        'software': record.software,
    }
    for device in Device:
        row[f"{device.name.lower()}_ok"] = '1' if record.device_ok[device] else '0'
        row[f"{device.name.lower()}_val"] = str(record.device_val[device])
    row['state'] = record.state.name if record.state else ''
    row['result'] = 'PASS' if record.all_ok() else 'FAIL'
    row['diagnostics'] = record.diagnostics
    return row


class CsvResultSink:
    """
    Appends results to a CSV file, writing the header only for a new file.

    Usage:
        sink = CsvResultSink("results.csv")
        sink.append(record)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._columns = result_columns()

    def append(self, record: UnitRecord) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            with open(self.path, 'a', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=self._columns)
                if new_file:
                    writer.writeheader()
                writer.writerow(result_row(record))
        logger.info(f"Results for {record.serial or 'unidentified robot'} saved to {self.path}")


class MemoryResultSink:
    """Keeps finalized records in memory; used by replay tools and tests."""

    def __init__(self):
        self.records: List[UnitRecord] = []

    def append(self, record: UnitRecord) -> None:
        self.records.append(record)

    def __len__(self) -> int:
        return len(self.records)
