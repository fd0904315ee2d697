"""
Validation Protocols
====================

Per-device-family expectation checks. Everything here is a pure function
or a small value object over the unit record; sequencing, logging and
actuation are the sequencer's job.
"""

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Sequence, Tuple

from .robot import AnalogChannel, Device, IR_DOCK, MOTORS, UnitRecord

# Confirmation buttons while a human verdict is pending
ACCEPT_BUTTON = 0
REJECT_BUTTON = 2

BUMPER_TESTS = 1


class Action(IntEnum):
    """Half of an engage/release pair (press, drop, cliff, plug...)."""
    RELEASE = 0
    ENGAGE = 1


class Outcome(Enum):
    """Result of feeding one event to a parity counter."""
    IGNORED = "ignored"         # device already verified
    MISMATCH = "mismatch"       # wrong half of the pair
    PROGRESS = "progress"       # counted, more round trips needed
    VERIFIED = "verified"       # counted, device now verified


# -- Parity counter (bumpers, wheel drops, cliffs, power plugs) --

def expected_action(value: int) -> Action:
    """Even counter expects an engage, odd counter a release."""
    return Action.ENGAGE if value % 2 == 0 else Action.RELEASE


def parity_counter(record: UnitRecord, device: Device, action: Action,
                   required: int) -> Outcome:
    """
    Count one engage/release event for a device.

    The device is verified after `required` complete round trips. Events
    that do not match the expected half leave the counter untouched.
    """
    if record.device_ok[device]:
        return Outcome.IGNORED
    if action != expected_action(record.device_val[device]):
        return Outcome.MISMATCH

    record.device_val[device] += 1
    if record.device_val[device] >= required * 2:
        record.verify(device)
        return Outcome.VERIFIED
    return Outcome.PROGRESS


# -- Ordered sequence (function buttons) --

def button_expectation(progress: int) -> Tuple[int, int]:
    """(button, state) expected after `progress` matched events; pressed = 1."""
    return progress // 2, 1 - progress % 2


def ordered_sequence_matches(progress: int, button: int, state: int) -> bool:
    return (button, state) == button_expectation(progress)


# -- Threshold crossing (analog inputs) --

@dataclass
class ScanUpdate:
    """What changed during one analog scan tick."""
    covered_low: List[int] = field(default_factory=list)
    covered_high: List[int] = field(default_factory=list)
    pulse_ended: bool = False


class AnalogScan:
    """
    Tracks which analog channels have reached both ends of their range.

    Every first crossing (re)starts an indicator pulse lasting `pulse_ticks`
    ticks. The scan is complete when every channel has been covered low and
    high and the last pulse has run out.

    The packed value mirrors what is stored on the record: bit 16+i marks
    channel i covered low, bit 24+i covered high, the low 16 bits hold the
    remaining pulse ticks.
    """

    def __init__(self, channels: int, low: int, high: int, pulse_ticks: int):
        self.channels = channels
        self.low = low
        self.high = high
        self.pulse_ticks = max(1, pulse_ticks)
        self.covered_low = [False] * channels
        self.covered_high = [False] * channels
        self.countdown = 0

    def tick(self, analog_in: Sequence[AnalogChannel]) -> ScanUpdate:
        update = ScanUpdate()

        if self.countdown > 0:
            self.countdown -= 1
            update.pulse_ended = self.countdown == 0

        for i, channel in enumerate(analog_in[:self.channels]):
            if not self.covered_low[i] and channel.minimum <= self.low:
                self.covered_low[i] = True
                self.countdown = self.pulse_ticks
                update.covered_low.append(i)
            if not self.covered_high[i] and channel.maximum >= self.high:
                self.covered_high[i] = True
                self.countdown = self.pulse_ticks
                update.covered_high.append(i)
        return update

    @property
    def all_covered(self) -> bool:
        return all(self.covered_low) and all(self.covered_high)

    @property
    def complete(self) -> bool:
        return self.all_covered and self.countdown == 0

    @property
    def value(self) -> int:
        mask = 0
        for i in range(self.channels):
            if self.covered_low[i]:
                mask |= 1 << (16 + i)
            if self.covered_high[i]:
                mask |= 1 << (24 + i)
        return mask | self.countdown


# -- External reference (gyroscope) --

def wrap_angle(angle: float) -> float:
    """Wrap an angle difference into (-pi, pi]."""
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped <= 0.0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi


def yaw_difference(onboard_yaw: float, reference_yaw: float) -> float:
    return wrap_angle(onboard_yaw - reference_yaw)


def gyro_consistent(diff_1: float, diff_2: float, tolerance: float) -> bool:
    """The gyro drifted no more than `tolerance` between both legs."""
    return abs(diff_1 - diff_2) <= tolerance


# -- Timed sample (charging) --

def charge_verdict(v1: int, v2: int, minimum: int) -> Tuple[int, bool]:
    """Voltage gained between samples (tenths of volt) and whether it suffices."""
    delta = v2 - v1
    return delta, delta >= minimum


# -- Peak tracking (motors) --

def update_motor_peaks(record: UnitRecord, currents: Sequence[int]) -> None:
    for device, current in zip(MOTORS, currents):
        record.device_val[device] = max(record.device_val[device], int(current))


def motors_within_limit(record: UnitRecord, max_current: int) -> bool:
    """Verify each motor whose peak current stayed within the limit."""
    for device in MOTORS:
        if record.device_val[device] <= max_current:
            record.verify(device)
    return record.motors_ok()


# -- IR dock beacon --

def collect_dock_ir(record: UnitRecord, data: Sequence[int]) -> List[Device]:
    """Verify every dock IR receiver reporting a signal. Returns newly verified."""
    verified = []
    for device, value in zip(IR_DOCK, data):
        if value > 0 and not record.device_ok[device]:
            record.device_val[device] = int(value)
            record.verify(device)
            verified.append(device)
    return verified


# -- Digital inputs --

def first_low_input(values: Sequence[bool]) -> Optional[int]:
    """Index of the first digital input pulled low, if any."""
    for i, value in enumerate(values):
        if not value:
            return i
    return None


# -- Human confirmation (LEDs, sounds, digital I/O) --

def confirm(record: UnitRecord, devices: Sequence[Device], accepted: bool) -> None:
    """Apply the tester's verdict; a rejection leaves the devices unverified."""
    if accepted:
        for device in devices:
            record.verify(device)
