"""Exception hierarchy for the factory test harness.

Only startup problems raise; everything that goes wrong while a unit is
being evaluated is logged and stays local to the device under test.
"""


class FactoryTestError(Exception):
    """Base exception for all factory test errors."""


class ConfigError(FactoryTestError):
    """Invalid configuration value."""


class TransportUnavailableError(FactoryTestError):
    """The robot transport (ROS graph) could not be reached at startup."""
