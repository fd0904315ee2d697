"""
Robot Events
============

Vocabulary of the messages the transport delivers to the sequencer.
Payloads are plain dictionaries so any transport (ROS2, replay files,
tests) can produce them without depending on message packages.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import Any, Dict


class EventType(Enum):
    """Inbound event families."""
    # Identification and telemetry
    VERSION_INFO = auto()       # {udid, hardware, firmware, software}
    SENSOR_STATE = auto()       # {current, charger, battery, analog_input}
    DOCK_IR = auto()            # {data: [left, center, right]}
    IMU = auto()                # {yaw}

    # Discrete sensor events
    BUTTON = auto()             # {button, state}
    BUMPER = auto()             # {bumper, state}
    WHEEL_DROP = auto()         # {wheel, state}
    CLIFF = auto()              # {sensor, state}
    POWER = auto()              # {event}
    DIGITAL_INPUT = auto()      # {values}

    # Diagnostics
    DIAGNOSTICS = auto()        # {status: [{name, level, message, values}]}
    ROBOT_STATUS = auto()       # {level}

    # Lifecycle
    ROBOT_ONLINE = auto()
    ROBOT_OFFLINE = auto()


class ButtonState(IntEnum):
    RELEASED = 0
    PRESSED = 1


class BumperState(IntEnum):
    RELEASED = 0
    PRESSED = 1


class Bumper(IntEnum):
    LEFT = 0
    CENTER = 1
    RIGHT = 2


class Wheel(IntEnum):
    LEFT = 0
    RIGHT = 1


class WheelDropState(IntEnum):
    RAISED = 0
    DROPPED = 1


class CliffSensor(IntEnum):
    LEFT = 0
    CENTER = 1
    RIGHT = 2


class CliffState(IntEnum):
    FLOOR = 0
    CLIFF = 1


class PowerEvent(IntEnum):
    UNPLUGGED = 0
    PLUGGED_TO_ADAPTER = 1
    PLUGGED_TO_DOCKBASE = 2
    CHARGE_COMPLETED = 3
    BATTERY_LOW = 4
    BATTERY_CRITICAL = 5


# Power events that may legitimately arrive at any time
BACKGROUND_POWER_EVENTS = (
    PowerEvent.CHARGE_COMPLETED,
    PowerEvent.BATTERY_LOW,
    PowerEvent.BATTERY_CRITICAL,
)


@dataclass
class Event:
    """Event data container."""
    event_type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __repr__(self) -> str:
        return f"Event({self.event_type.name}, {self.data})"


def make_event(event_type: EventType, source: str = "", **data) -> Event:
    """Shorthand used by transports and tests."""
    return Event(event_type=event_type, data=data, source=source)
