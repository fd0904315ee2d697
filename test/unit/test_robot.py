"""
Unit Record Tests
=================

Unit tests for the robot record, its device table and the session ledger.
"""

import os
import pytest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from kobuki_factory_test.core.ledger import EvaluatedLedger
from kobuki_factory_test.core.robot import (
    AnalogChannel, Device, UnitRecord, format_serial, version_text, BUMPERS, CLIFFS,
)


class TestDevice:
    """Test the device table."""

    def test_device_count(self):
        """Test all device slots exist."""
        assert len(Device) == 27
        assert Device.V_INFO == 0
        assert Device.A_INPUT == 26

    def test_group_order(self):
        """Test groups follow the robot's sensor indices."""
        assert BUMPERS == (Device.BUMPER_L, Device.BUMPER_C, Device.BUMPER_R)
        assert CLIFFS == (Device.CLIFF_L, Device.CLIFF_C, Device.CLIFF_R)


class TestUnitRecord:
    """Test UnitRecord."""

    def test_default_values(self):
        """Test a fresh record has nothing verified."""
        record = UnitRecord(seq_id=3)

        assert record.serial == ""
        assert record.state is None
        assert not any(record.device_ok.values())
        assert record.failed_devices() == list(Device)
        assert len(record.analog_in) == 4

    def test_serial(self):
        """Test serial formatting from the unique device id."""
        assert format_serial([1, 0xABC, 0xFFFFFFFF]) == "00000001-00000ABC-FFFFFFFF"

        record = UnitRecord(seq_id=0)
        record.set_serial([1, 2, 3])
        assert record.serial == "00000001-00000002-00000003"
        assert record.same_udid([1, 2, 3])
        assert not record.same_udid([1, 2, 4])

    def test_versions(self):
        """Test version numbers are kept and rendered."""
        record = UnitRecord(seq_id=0)
        record.set_versions(0x0104, 0x0102, 0x010203)

        assert record.version_nb() == "1.4/1.2/1.2.3"
        assert record.device_val[Device.V_INFO] != 0

    def test_text_versions(self):
        """Test versions reported as dotted text are kept as given."""
        record = UnitRecord(seq_id=0)
        record.set_versions("1.0.4", "1.2.0", "1.5.2")

        assert record.version_nb() == "1.0.4/1.2.0/1.5.2"
        assert record.device_val[Device.V_INFO] == (0x010200 << 48) | (0x010004 << 24) | 0x010502

    def test_invalid_version_leaves_record(self):
        """Test an invalid version raises before anything is stored."""
        record = UnitRecord(seq_id=0)

        with pytest.raises(ValueError):
            record.set_versions("1.0.4", "1.x", "1.5.2")

        assert record.hardware == ""
        assert record.device_val[Device.V_INFO] == 0

    def test_version_text(self):
        """Test packed and text version decoding."""
        assert version_text(0x0104, 2) == "1.4"
        assert version_text(0x010203, 3) == "1.2.3"
        assert version_text(" 01.2.3 ", 3) == "1.2.3"
        with pytest.raises(ValueError):
            version_text("", 3)

    def test_all_ok(self):
        """Test the overall verdict is the AND of every device."""
        record = UnitRecord(seq_id=0)
        for device in Device:
            if device != Device.A_INPUT:
                record.verify(device)

        assert not record.all_ok()
        assert record.failed_devices() == [Device.A_INPUT]

        record.verify(Device.A_INPUT)
        assert record.all_ok()

    def test_group_verdicts(self):
        """Test group verdicts need every member."""
        record = UnitRecord(seq_id=0)
        record.verify(Device.BUMPER_L)
        record.verify(Device.BUMPER_C)
        assert not record.bumpers_ok()

        record.verify(Device.BUMPER_R)
        assert record.bumpers_ok()


class TestAnalogChannel:
    """Test analog running statistics."""

    def test_initial_bounds(self):
        """Test the first sample sets both bounds."""
        channel = AnalogChannel()
        assert channel.minimum == 0x1000
        assert channel.maximum == -1

        channel.sample(4095)

        assert channel.minimum == 4095
        assert channel.maximum == 4095

    def test_sample(self):
        """Test min, max and delta tracking."""
        channel = AnalogChannel()
        channel.sample(100)
        channel.sample(40)
        channel.sample(3000)

        assert channel.minimum == 40
        assert channel.maximum == 3000
        assert channel.last == 3000
        assert channel.delta == 2960


class TestEvaluatedLedger:
    """Test the session ledger."""

    def test_add_and_lookup(self):
        """Test records are kept by serial."""
        ledger = EvaluatedLedger()
        record = UnitRecord(seq_id=0, serial="A")
        ledger.add(record)

        assert "A" in ledger
        assert ledger.get("A") is record
        assert len(ledger) == 1
        assert list(ledger) == [record]

    def test_anonymous_counted(self):
        """Test unidentified robots count but cannot be looked up."""
        ledger = EvaluatedLedger()
        ledger.add(UnitRecord(seq_id=0))

        assert len(ledger) == 1
        assert ledger.serials() == []
        assert "" not in ledger

    def test_duplicate_keeps_first(self):
        """Test a duplicate serial keeps the first result."""
        ledger = EvaluatedLedger()
        first = UnitRecord(seq_id=0, serial="A")
        ledger.add(first)
        ledger.add(UnitRecord(seq_id=1, serial="A"))

        assert len(ledger) == 1
        assert ledger.get("A") is first


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
