"""Session ledger of robots already evaluated."""

import logging
from collections import OrderedDict
from typing import Iterator, List, Optional

from .robot import UnitRecord

logger = logging.getLogger(__name__)


class EvaluatedLedger:
    """
    Append-only record of finalized robots, keyed by serial number.

    Only covers the current session; result files are not reloaded.
    """

    def __init__(self):
        self._records: 'OrderedDict[str, UnitRecord]' = OrderedDict()
        self._anonymous = 0

    def add(self, record: UnitRecord) -> None:
        """Append a finalized record. Unidentified robots are only counted."""
        if not record.serial:
            self._anonymous += 1
            return
        if record.serial in self._records:
            logger.warning(f"Robot {record.serial} already in the ledger; keeping first result")
            return
        self._records[record.serial] = record

    def get(self, serial: str) -> Optional[UnitRecord]:
        return self._records.get(serial)

    def serials(self) -> List[str]:
        return list(self._records)

    def __contains__(self, serial: str) -> bool:
        return serial in self._records

    def __len__(self) -> int:
        return len(self._records) + self._anonymous

    def __iter__(self) -> Iterator[UnitRecord]:
        return iter(self._records.values())
