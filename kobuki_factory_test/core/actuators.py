"""Outbound command interface towards the robot."""

from enum import IntEnum
from typing import Protocol, Sequence

DIGITAL_CHANNELS = 4


class LedColor(IntEnum):
    BLACK = 0
    GREEN = 1
    ORANGE = 2
    RED = 3


class SoundId(IntEnum):
    ON = 0
    OFF = 1
    RECHARGE = 2
    BUTTON = 3
    ERROR = 4
    CLEANING_START = 5
    CLEANING_END = 6


class Actuators(Protocol):
    """Narrow protocol for the commands the sequencer issues."""

    def velocity(self, linear: float, angular: float) -> None: ...

    def leds(self, value: LedColor) -> None: ...

    def sound(self, value: SoundId) -> None: ...

    def digital_output(self, values: Sequence[bool], mask: Sequence[bool]) -> None: ...


def output_channels(*channels: int, on: bool = True):
    """Build (values, mask) addressing only the given digital output channels."""
    values = [False] * DIGITAL_CHANNELS
    mask = [False] * DIGITAL_CHANNELS
    for c in channels:
        values[c] = on
        mask[c] = True
    return values, mask


def all_outputs_off():
    return output_channels(*range(DIGITAL_CHANNELS), on=False)
