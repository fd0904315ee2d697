"""
Unit Record
===========

Mutable state of the robot currently under test. It has no behavior of its
own beyond bookkeeping helpers; all evaluation logic lives in the
validation protocols and the sequencer.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

ANALOG_CHANNELS = 4
ANALOG_RANGE = 0x1000  # 12-bit ADC


class Device(IntEnum):
    """Evaluated device slots, in result-file column order."""
    V_INFO = 0
    IR_DOCK_L = 1
    IR_DOCK_C = 2
    IR_DOCK_R = 3
    BUTTON_0 = 4
    BUTTON_1 = 5
    BUTTON_2 = 6
    BUMPER_L = 7
    BUMPER_C = 8
    BUMPER_R = 9
    W_DROP_L = 10
    W_DROP_R = 11
    CLIFF_L = 12
    CLIFF_C = 13
    CLIFF_R = 14
    PWR_JACK = 15
    PWR_DOCK = 16
    LED_1 = 17
    LED_2 = 18
    SOUNDS = 19
    MOTOR_L = 20
    MOTOR_R = 21
    IMU_DEV = 22
    CHARGING = 23
    D_INPUT = 24
    D_OUTPUT = 25
    A_INPUT = 26


# Device groups evaluated together
IR_DOCK = (Device.IR_DOCK_L, Device.IR_DOCK_C, Device.IR_DOCK_R)
BUTTONS = (Device.BUTTON_0, Device.BUTTON_1, Device.BUTTON_2)
BUMPERS = (Device.BUMPER_L, Device.BUMPER_C, Device.BUMPER_R)
WHEEL_DROPS = (Device.W_DROP_L, Device.W_DROP_R)
CLIFFS = (Device.CLIFF_L, Device.CLIFF_C, Device.CLIFF_R)
POWER_SOURCES = (Device.PWR_JACK, Device.PWR_DOCK)
LEDS = (Device.LED_1, Device.LED_2)
MOTORS = (Device.MOTOR_L, Device.MOTOR_R)


class HealthState(Enum):
    """Top-level diagnostics level reported by the robot."""
    OK = 0
    WARN = 1
    ERROR = 2


@dataclass
class AnalogChannel:
    """Running statistics of one analog input channel."""
    last: int = 0
    minimum: int = ANALOG_RANGE
    maximum: int = -1
    delta: int = 0

    def sample(self, value: int) -> None:
        self.delta = value - self.last
        self.last = value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)


def format_serial(udid: Sequence[int]) -> str:
    """Render the unique device id words as the robot serial number."""
    return '-'.join(f"{word & 0xFFFFFFFF:08X}" for word in udid)


def version_text(version: Union[int, str], fields: int) -> str:
    """
    Dotted version number.

    The ROS2 driver reports versions as text ("1.0.4"); integers are packed
    the Kobuki way, one byte per field, most significant first.

    Raises:
        ValueError: If a text version has a non numeric field
    """
    if isinstance(version, str):
        parts = version.strip().split('.')
        if not all(part.isdigit() for part in parts):
            raise ValueError(f"Invalid version number: {version!r}")
        return '.'.join(str(int(part)) for part in parts)
    packed = int(version)
    return '.'.join(str((packed >> (8 * i)) & 0xFF) for i in reversed(range(fields)))


def pack_version(text: str) -> int:
    """Last three fields of a dotted version, one byte each."""
    packed = 0
    for part in text.split('.')[-3:]:
        packed = (packed << 8) | (int(part) & 0xFF)
    return packed


@dataclass
class UnitRecord:
    """
    One robot under evaluation.

    Attributes:
        seq_id: Ordinal of the robot within the session
        serial: Identity, taken from the first version info message
        udid: Raw unique device id words the serial was built from
        hardware/firmware/software: Dotted version numbers, empty until identified
        device_ok: Verified flag per device (never cleared once set)
        device_val: Device-specific measured value (counter, peak, mask...)
        analog_in: Running statistics per analog input channel
        imu_data: (yaw 1, diff 1, yaw 2, diff 2, latest onboard yaw)
        diagnostics: Last full diagnostics dump, as text
        state: Top-level health reported by the robot, None until known
    """
    seq_id: int
    serial: str = ""
    udid: List[int] = field(default_factory=list)
    hardware: str = ""
    firmware: str = ""
    software: str = ""
    device_ok: Dict[Device, bool] = field(
        default_factory=lambda: {d: False for d in Device})
    device_val: Dict[Device, int] = field(
        default_factory=lambda: {d: 0 for d in Device})
    analog_in: List[AnalogChannel] = field(
        default_factory=lambda: [AnalogChannel() for _ in range(ANALOG_CHANNELS)])
    imu_data: List[float] = field(default_factory=lambda: [0.0] * 5)
    diagnostics: str = ""
    state: Optional[HealthState] = None

    def set_serial(self, udid: Sequence[int]) -> None:
        self.udid = list(udid)
        self.serial = format_serial(udid)

    def same_udid(self, udid: Sequence[int]) -> bool:
        return list(udid) == self.udid

    def set_versions(self, hardware: Union[int, str], firmware: Union[int, str],
                     software: Union[int, str]) -> None:
        """Adopt the version triple; the record is untouched if any is invalid."""
        versions = (version_text(hardware, 2), version_text(firmware, 2), version_text(software, 3))
        self.hardware, self.firmware, self.software = versions
        self.device_val[Device.V_INFO] = (
            (pack_version(self.firmware) << 48) |
            (pack_version(self.hardware) << 24) |
            pack_version(self.software))

    def version_nb(self) -> str:
        """Human readable hardware/firmware/software versions."""
        return f"{self.hardware}/{self.firmware}/{self.software}"

    def verify(self, device: Device) -> None:
        """Mark a device as passed."""
        self.device_ok[device] = True

    def is_ok(self, *devices: Device) -> bool:
        return all(self.device_ok[d] for d in devices)

    # -- Group verdicts --
    def ir_dock_ok(self) -> bool:
        return self.is_ok(*IR_DOCK)

    def buttons_ok(self) -> bool:
        return self.is_ok(*BUTTONS)

    def bumpers_ok(self) -> bool:
        return self.is_ok(*BUMPERS)

    def w_drop_ok(self) -> bool:
        return self.is_ok(*WHEEL_DROPS)

    def cliffs_ok(self) -> bool:
        return self.is_ok(*CLIFFS)

    def pwr_src_ok(self) -> bool:
        return self.is_ok(*POWER_SOURCES)

    def leds_ok(self) -> bool:
        return self.is_ok(*LEDS)

    def motors_ok(self) -> bool:
        return self.is_ok(*MOTORS)

    def all_ok(self) -> bool:
        return self.is_ok(*Device)

    def failed_devices(self) -> List[Device]:
        return [d for d in Device if not self.device_ok[d]]

    def __repr__(self) -> str:
        return f"UnitRecord(seq={self.seq_id}, serial={self.serial or '?'})"
