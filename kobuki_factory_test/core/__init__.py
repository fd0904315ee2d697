"""
Core Module
===========

Contains the transport-independent part of the factory test:
- Configuration management
- Step sequencer
- Validation protocols
- Unit records, ledger and result sinks
"""

from .config import Config, get_config, load_config
from .events import Event, EventType, make_event
from .exceptions import ConfigError, FactoryTestError, TransportUnavailableError
from .ledger import EvaluatedLedger
from .motion import MotionController
from .results import CsvResultSink, MemoryResultSink
from .robot import Device, HealthState, UnitRecord
from .sequencer import Sequencer, Step

__all__ = [
    'Config',
    'get_config',
    'load_config',
    'Event',
    'EventType',
    'make_event',
    'ConfigError',
    'FactoryTestError',
    'TransportUnavailableError',
    'EvaluatedLedger',
    'MotionController',
    'CsvResultSink',
    'MemoryResultSink',
    'Device',
    'HealthState',
    'UnitRecord',
    'Sequencer',
    'Step',
]
