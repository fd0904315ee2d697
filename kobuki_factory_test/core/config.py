"""
Configuration Management
========================

Provides a centralized configuration system with:
- YAML file loading
- Environment variable overrides
- Default values matching the factory test bench
- Singleton pattern for global access
"""

import math
import os
import yaml
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, fields

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class SequencerConfig:
    """Control loop settings."""
    frequency: float = 20.0
    result_file: str = "kobuki_factory_test_results.csv"


@dataclass
class MotionConfig:
    """Speeds and amplitudes of the scripted moves."""
    motors_linear_speed: float = 0.2            # m/s
    motors_angular_speed: float = math.pi / 2   # rad/s
    motors_distance: float = 0.4                # m
    motors_angle: float = math.pi               # rad
    bumpers_linear_speed: float = 0.1
    bumpers_angular_speed: float = math.pi / 5
    bumpers_approach_delay: float = 1.5         # s before driving to the wall
    bumpers_backoff_time: float = 1.5           # s reversing after a hit
    gyro_angular_speed: float = math.pi / 3
    gyro_angle: float = 2 * math.pi             # one full turn each way


@dataclass
class ThresholdConfig:
    """Pass/fail limits and timing of the measurements."""
    motor_max_current: int = 24
    cliff_sensor_tests: int = 2
    wheel_drop_tests: int = 2
    power_plug_tests: int = 1
    min_power_charged: int = 2          # tenths of volt
    charge_start_timeout: float = 40.0  # s
    charge_settle_time: float = 2.0     # s
    measure_charge_time: float = 10.0   # s
    gyro_camera_max_diff: float = 0.05  # rad
    analog_input_min: int = 2
    analog_input_max: int = 4090
    analog_pulse_time: float = 1.0      # s


@dataclass
class CameraConfig:
    """Visual reference (camera + check board) settings."""
    device_index: int = 0
    calibration_file: str = ""
    poll_interval: float = 0.2
    max_attempts: int = 80
    board_cols: int = 8
    board_rows: int = 6
    square_size: float = 0.025
    use_mock: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_enabled: bool = False
    file_path: str = "kobuki_factory_test.log"
    max_file_size: int = 10485760
    backup_count: int = 3
    console_enabled: bool = True


def _section(cls, raw: Dict[str, Any]):
    """Build a config section from a YAML mapping, keeping defaults for missing keys."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Section for {cls.__name__} must be a mapping")
    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    kwargs = {}
    for name in known:
        default = getattr(defaults, name)
        value = raw.get(name, default)
        try:
            kwargs[name] = type(default)(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {cls.__name__}.{name}: {value!r}") from e
    return cls(**kwargs)


class Config:
    """
    Central configuration manager.

    Loads configuration from YAML file with environment variable overrides.
    Uses singleton pattern for global access.

    Usage:
        config = Config.load("config/factory_test.yaml")
        # or
        config = get_config()  # Gets existing instance

        hz = config.sequencer.frequency
        limit = config.thresholds.motor_max_current
    """

    _instance: Optional['Config'] = None
    _initialized: bool = False

    SECTIONS = {
        'sequencer': SequencerConfig,
        'motion': MotionConfig,
        'thresholds': ThresholdConfig,
        'camera': CameraConfig,
        'logging': LoggingConfig,
    }

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if Config._initialized and config_path is None:
            return

        self._raw: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None

        # Initialize sub-configs with defaults
        self.sequencer = SequencerConfig()
        self.motion = MotionConfig()
        self.thresholds = ThresholdConfig()
        self.camera = CameraConfig()
        self.logging = LoggingConfig()

        Config._initialized = True

    @classmethod
    def load(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        instance = cls(config_path)
        instance._load_file(config_path)
        return instance

    @classmethod
    def reset(cls):
        """Reset singleton instance (for testing)."""
        cls._instance = None
        cls._initialized = False

    def _load_file(self, config_path: str) -> None:
        """Load and parse YAML configuration file."""
        path = Path(config_path)

        # Search for config file in common locations
        search_paths = [
            path,
            Path(__file__).parent.parent.parent / "config" / path.name,
            Path("/etc/kobuki_factory_test") / path.name,
        ]

        for search_path in search_paths:
            if search_path.exists():
                self._config_path = search_path
                break

        if self._config_path is None or not self._config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            self._apply_env_overrides()
            return

        try:
            with open(self._config_path, 'r') as f:
                self._raw = yaml.safe_load(f) or {}
            logger.info(f"Loaded config from: {self._config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}")
            return

        self._parse_config()
        self._apply_env_overrides()

    def _parse_config(self) -> None:
        """Parse raw config into typed dataclasses."""
        for name, cls in self.SECTIONS.items():
            if name in self._raw:
                setattr(self, name, _section(cls, self._raw[name]))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        if os.environ.get('FACTORY_TEST_RESULT_FILE'):
            self.sequencer.result_file = os.environ['FACTORY_TEST_RESULT_FILE']
        if os.environ.get('FACTORY_TEST_FREQUENCY'):
            self.sequencer.frequency = float(os.environ['FACTORY_TEST_FREQUENCY'])

        # Camera
        if os.environ.get('FACTORY_TEST_CAMERA_INDEX'):
            self.camera.device_index = int(os.environ['FACTORY_TEST_CAMERA_INDEX'])
        if os.environ.get('FACTORY_TEST_CAMERA_CALIBRATION'):
            self.camera.calibration_file = os.environ['FACTORY_TEST_CAMERA_CALIBRATION']

        # Logging
        if os.environ.get('FACTORY_TEST_LOG_LEVEL'):
            self.logging.level = os.environ['FACTORY_TEST_LOG_LEVEL']

    def get(self, key: str, default: Any = None) -> Any:
        """Get raw config value by dot-notation key."""
        keys = key.split('.')
        value = self._raw
        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def __repr__(self) -> str:
        return f"Config(path={self._config_path}, frequency={self.sequencer.frequency})"


# Global config accessor
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None or _config is not Config._instance:
        _config = Config()
    return _config


def load_config(config_path: str) -> Config:
    """Load configuration from file and set as global."""
    global _config
    _config = Config.load(config_path)
    return _config
