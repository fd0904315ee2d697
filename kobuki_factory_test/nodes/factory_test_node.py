#!/usr/bin/env python3
"""
Factory Test Node for ROS2
==========================

Bridges the Kobuki driver to the factory test sequencer. Driver messages
become sequencer events; sequencer commands become driver messages.

Subscribed Topics:
    version_info (kobuki_ros_interfaces/VersionInfo) - latched, once per robot
    sensors/core (kobuki_ros_interfaces/SensorState) - motor current, battery, analog in
    sensors/dock_ir (kobuki_ros_interfaces/DockInfraRed)
    sensors/imu_data (sensor_msgs/Imu)
    events/button, events/bumper, events/wheel_drop, events/cliff,
    events/power_system, events/digital_input, events/robot_state
    diagnostics (diagnostic_msgs/DiagnosticArray)
    diagnostics_toplevel_state (diagnostic_msgs/DiagnosticStatus)

Published Topics:
    commands/velocity (geometry_msgs/Twist)
    commands/led1, commands/led2 (kobuki_ros_interfaces/Led)
    commands/sound (kobuki_ros_interfaces/Sound)
    commands/digital_output (kobuki_ros_interfaces/DigitalOutput)
"""

import logging
import math
import sys
from logging.handlers import RotatingFileHandler

import rclpy
from rclpy.node import Node
from rclpy.callback_groups import MutuallyExclusiveCallbackGroup, ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rclpy.qos import DurabilityPolicy, QoSProfile, ReliabilityPolicy

from diagnostic_msgs.msg import DiagnosticArray, DiagnosticStatus
from geometry_msgs.msg import Twist
from sensor_msgs.msg import Imu
from kobuki_ros_interfaces.msg import (
    BumperEvent, ButtonEvent, CliffEvent, DigitalInputEvent, DigitalOutput,
    DockInfraRed, Led, PowerSystemEvent, RobotStateEvent, SensorState, Sound,
    VersionInfo, WheelDropEvent,
)

from kobuki_factory_test.core.config import Config, LoggingConfig, load_config
from kobuki_factory_test.core.events import EventType, make_event
from kobuki_factory_test.core.exceptions import TransportUnavailableError
from kobuki_factory_test.core.results import CsvResultSink
from kobuki_factory_test.core.sequencer import Sequencer
from kobuki_factory_test.hardware import create_visual_reference

logger = logging.getLogger(__name__)


def quaternion_to_yaw(q) -> float:
    """Yaw of a geometry_msgs/Quaternion."""
    siny = 2.0 * (q.w * q.z + q.x * q.y)
    cosy = 1.0 - 2.0 * (q.y * q.y + q.z * q.z)
    return math.atan2(siny, cosy)


def status_level(level) -> int:
    """DiagnosticStatus.level is a byte in ROS2."""
    if isinstance(level, (bytes, bytearray)):
        return int.from_bytes(level, 'little')
    return int(level)


def status_to_dict(status) -> dict:
    return {
        'name': status.name,
        'level': status_level(status.level),
        'message': status.message,
        'values': {kv.key: kv.value for kv in status.values},
    }


def configure_logging(config: LoggingConfig) -> None:
    """Attach console and rotating file handlers to the package logger."""
    package_logger = logging.getLogger('kobuki_factory_test')
    package_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if config.console_enabled:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    if config.file_enabled:
        handler = RotatingFileHandler(
            config.file_path, maxBytes=config.max_file_size, backupCount=config.backup_count)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


class RosActuators:
    """Actuators implementation publishing Kobuki driver commands."""

    def __init__(self, node: Node):
        self._velocity_pub = node.create_publisher(Twist, 'commands/velocity', 10)
        self._led_pubs = (
            node.create_publisher(Led, 'commands/led1', 10),
            node.create_publisher(Led, 'commands/led2', 10),
        )
        self._sound_pub = node.create_publisher(Sound, 'commands/sound', 10)
        self._output_pub = node.create_publisher(DigitalOutput, 'commands/digital_output', 10)

    def velocity(self, linear: float, angular: float) -> None:
        cmd = Twist()
        cmd.linear.x = float(linear)
        cmd.angular.z = float(angular)
        self._velocity_pub.publish(cmd)

    def leds(self, value) -> None:
        msg = Led()
        msg.value = int(value)
        for pub in self._led_pubs:
            pub.publish(msg)

    def sound(self, value) -> None:
        msg = Sound()
        msg.value = int(value)
        self._sound_pub.publish(msg)

    def digital_output(self, values, mask) -> None:
        msg = DigitalOutput()
        msg.values = [bool(v) for v in values]
        msg.mask = [bool(m) for m in mask]
        self._output_pub.publish(msg)


class FactoryTestNode(Node):
    """Runs the factory test sequencer against the Kobuki driver."""

    def __init__(self):
        super().__init__('factory_test_node')

        # Parameters
        self.declare_parameter('config_file', 'factory_test.yaml')
        self.declare_parameter('result_file', '')
        self.declare_parameter('camera_device_index', -1)
        self.declare_parameter('camera_calibration_file', '')

        config = load_config(self.get_parameter('config_file').value)
        self._apply_parameters(config)
        configure_logging(config.logging)

        self.callback_group = ReentrantCallbackGroup()
        self.tick_group = MutuallyExclusiveCallbackGroup()

        self.visual_reference = create_visual_reference(use_mock=config.camera.use_mock, config=config)
        self.sequencer = Sequencer(
            actuators=RosActuators(self),
            result_sink=CsvResultSink(config.sequencer.result_file),
            visual_reference=self.visual_reference,
            config=config)
        self.sequencer.on('on_log', self._log_callback)
        self.sequencer.on('on_prompt_show', self._prompt_callback)

        self._version_qos = QoSProfile(
            reliability=ReliabilityPolicy.RELIABLE,
            durability=DurabilityPolicy.TRANSIENT_LOCAL,
            depth=1)
        self._version_sub = None
        self._subscribe_version_info()

        subscriptions = (
            (SensorState, 'sensors/core', self._sensor_state_callback),
            (DockInfraRed, 'sensors/dock_ir', self._dock_ir_callback),
            (Imu, 'sensors/imu_data', self._imu_callback),
            (ButtonEvent, 'events/button', self._button_callback),
            (BumperEvent, 'events/bumper', self._bumper_callback),
            (WheelDropEvent, 'events/wheel_drop', self._wheel_drop_callback),
            (CliffEvent, 'events/cliff', self._cliff_callback),
            (PowerSystemEvent, 'events/power_system', self._power_callback),
            (DigitalInputEvent, 'events/digital_input', self._digital_input_callback),
            (RobotStateEvent, 'events/robot_state', self._robot_state_callback),
            (DiagnosticArray, 'diagnostics', self._diagnostics_callback),
            (DiagnosticStatus, 'diagnostics_toplevel_state', self._toplevel_state_callback),
        )
        for msg_type, topic, callback in subscriptions:
            self.create_subscription(
                msg_type, topic, self._guarded(callback), 10,
                callback_group=self.callback_group)

        period = 1.0 / config.sequencer.frequency
        self.create_timer(period, self._tick, callback_group=self.tick_group)

        self.get_logger().info(
            f'Factory test node started: {config.sequencer.frequency:g} Hz, '
            f'results to {config.sequencer.result_file}')

    def _apply_parameters(self, config: Config) -> None:
        """Node parameters take precedence over the YAML file."""
        result_file = self.get_parameter('result_file').value
        if result_file:
            config.sequencer.result_file = result_file
        device_index = self.get_parameter('camera_device_index').value
        if device_index >= 0:
            config.camera.device_index = device_index
        calibration_file = self.get_parameter('camera_calibration_file').value
        if calibration_file:
            config.camera.calibration_file = calibration_file

    def shutdown(self) -> None:
        """Halt the robot and release the camera."""
        self.sequencer.motion.stop()
        self.visual_reference.close()

    def _subscribe_version_info(self) -> None:
        # Recreated for each robot so the latched message is delivered again
        if self._version_sub is not None:
            self.destroy_subscription(self._version_sub)
        self._version_sub = self.create_subscription(
            VersionInfo, 'version_info', self._guarded(self._version_info_callback),
            self._version_qos, callback_group=self.callback_group)

    def _guarded(self, callback):
        def wrapper(msg):
            try:
                callback(msg)
            except Exception as e:
                self.get_logger().error(f'{callback.__name__} failed: {e}')
        return wrapper

    def _dispatch(self, event_type: EventType, **data) -> None:
        self.sequencer.on_event(make_event(event_type, source='ros', **data))

    # -- Sequencer observers --

    def _log_callback(self, level: int, message: str):
        ros_logger = self.get_logger()
        if level >= logging.ERROR:
            ros_logger.error(message)
        elif level >= logging.WARNING:
            ros_logger.warn(message)
        elif level >= logging.INFO:
            ros_logger.info(message)
        else:
            ros_logger.debug(message)

    def _prompt_callback(self, title: str, text: str, level: int):
        self._log_callback(max(level, logging.INFO), f'[{title}] {text}')

    # -- Control loop --

    def _tick(self):
        try:
            self.sequencer.tick()
        except Exception as e:
            self.get_logger().error(f'Sequencer tick failed: {e}')

    # -- Driver messages --

    def _version_info_callback(self, msg: VersionInfo):
        self._dispatch(EventType.VERSION_INFO, udid=list(msg.udid), hardware=msg.hardware,
                       firmware=msg.firmware, software=msg.software)

    def _sensor_state_callback(self, msg: SensorState):
        self._dispatch(EventType.SENSOR_STATE, current=list(msg.current), charger=msg.charger,
                       battery=msg.battery, analog_input=list(msg.analog_input))

    def _dock_ir_callback(self, msg: DockInfraRed):
        self._dispatch(EventType.DOCK_IR, data=list(msg.data))

    def _imu_callback(self, msg: Imu):
        self._dispatch(EventType.IMU, yaw=quaternion_to_yaw(msg.orientation))

    def _button_callback(self, msg: ButtonEvent):
        self._dispatch(EventType.BUTTON, button=msg.button, state=msg.state)

    def _bumper_callback(self, msg: BumperEvent):
        self._dispatch(EventType.BUMPER, bumper=msg.bumper, state=msg.state)

    def _wheel_drop_callback(self, msg: WheelDropEvent):
        self._dispatch(EventType.WHEEL_DROP, wheel=msg.wheel, state=msg.state)

    def _cliff_callback(self, msg: CliffEvent):
        self._dispatch(EventType.CLIFF, sensor=msg.sensor, state=msg.state)

    def _power_callback(self, msg: PowerSystemEvent):
        self._dispatch(EventType.POWER, event=msg.event)

    def _digital_input_callback(self, msg: DigitalInputEvent):
        self._dispatch(EventType.DIGITAL_INPUT, values=list(msg.values))

    def _robot_state_callback(self, msg: RobotStateEvent):
        if msg.state == RobotStateEvent.ONLINE:
            self._dispatch(EventType.ROBOT_ONLINE)
            self._subscribe_version_info()
        else:
            self._dispatch(EventType.ROBOT_OFFLINE)

    def _diagnostics_callback(self, msg: DiagnosticArray):
        self._dispatch(EventType.DIAGNOSTICS, status=[status_to_dict(s) for s in msg.status])

    def _toplevel_state_callback(self, msg: DiagnosticStatus):
        self._dispatch(EventType.ROBOT_STATUS, level=status_level(msg.level))


def init_transport(args=None) -> None:
    try:
        rclpy.init(args=args)
    except Exception as e:
        raise TransportUnavailableError(f'Cannot initialize ROS context: {e}') from e


def main(args=None):
    try:
        init_transport(args)
    except TransportUnavailableError as e:
        logger.critical(f'Factory test cannot start: {e}')
        sys.exit(1)

    node = FactoryTestNode()
    executor = MultiThreadedExecutor()
    executor.add_node(node)

    try:
        executor.spin()
    except KeyboardInterrupt:
        pass
    finally:
        node.shutdown()
        executor.shutdown()
        node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
