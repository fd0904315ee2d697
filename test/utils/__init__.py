"""
Test Utilities Package
======================

Hardware-free stand-ins for the robot, the clock and the timers.
"""

from .fakes import (
    FakeActuators,
    FakeClock,
    FakeSleep,
    ManualTimer,
    ManualTimerFactory,
    Bench,
)

__all__ = [
    'FakeActuators',
    'FakeClock',
    'FakeSleep',
    'ManualTimer',
    'ManualTimerFactory',
    'Bench',
]
