"""
Test Sequencer
==============

Step state machine driving the factory evaluation of one robot at a time.

Events from the transport arrive through `on_event()` at any moment and
mutate the unit record through the matching validation protocol. The
control loop calls `tick()` at a fixed rate to run the current step's
action (prompts, scripted moves, polled measurements). Steps only move
forward, one at a time; the terminal step saves the record and starts over.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .actuators import Actuators, LedColor, SoundId, all_outputs_off, output_channels, DIGITAL_CHANNELS
from .config import Config
from .events import (
    BACKGROUND_POWER_EVENTS, Bumper, BumperState, ButtonState, CliffSensor,
    CliffState, Event, EventType, PowerEvent, Wheel, WheelDropState,
)
from .ledger import EvaluatedLedger
from .motion import MotionController
from .protocols import (
    ACCEPT_BUTTON, BUMPER_TESTS, REJECT_BUTTON, Action, AnalogScan, Outcome,
    charge_verdict, collect_dock_ir, confirm, first_low_input, gyro_consistent,
    motors_within_limit, ordered_sequence_matches, parity_counter,
    update_motor_peaks, yaw_difference,
)
from .robot import BUMPERS, BUTTONS, Device, HealthState, UnitRecord, version_text

logger = logging.getLogger(__name__)


class StepFamily(Enum):
    IDENTIFICATION = "identification"
    POWER_PLUG = "power-plug"
    BUTTONS = "buttons"
    LEDS = "leds"
    SOUNDS = "sounds"
    CLIFF = "cliff"
    WHEEL_DROP = "wheel-drop"
    BUMPERS = "bumpers"
    MOTORS = "motors"
    GYROSCOPE = "gyroscope"
    CHARGING = "charging"
    DIGITAL_IO = "digital-io"
    ANALOG_IO = "analog-io"
    COMPLETION = "completion"


class Step(IntEnum):
    """Qualification steps, in evaluation order."""
    INITIALIZATION = 0
    GET_SERIAL_NUMBER = 1
    TEST_DC_ADAPTER = 2
    TEST_DOCKING_BASE = 3
    BUTTON_0_PRESSED = 4
    BUTTON_0_RELEASED = 5
    BUTTON_1_PRESSED = 6
    BUTTON_1_RELEASED = 7
    BUTTON_2_PRESSED = 8
    BUTTON_2_RELEASED = 9
    TEST_LEDS = 10
    TEST_SOUNDS = 11
    TEST_CLIFF_SENSORS = 12
    TEST_WHEEL_DROP_SENSORS = 13
    CENTER_BUMPER_PRESSED = 14
    CENTER_BUMPER_RELEASED = 15
    POINT_RIGHT_BUMPER = 16
    RIGHT_BUMPER_PRESSED = 17
    RIGHT_BUMPER_RELEASED = 18
    POINT_LEFT_BUMPER = 19
    LEFT_BUMPER_PRESSED = 20
    LEFT_BUMPER_RELEASED = 21
    PREPARE_MOTORS_TEST = 22
    TEST_MOTORS_FORWARD = 23
    TEST_MOTORS_BACKWARD = 24
    TEST_MOTORS_CLOCKWISE = 25
    TEST_MOTORS_COUNTERCW = 26
    EVAL_MOTORS_CURRENT = 27
    MEASURE_GYRO_ERROR = 28
    MEASURE_CHARGING = 29
    TEST_DIGITAL_IO_PORTS = 30
    TEST_ANALOG_INPUT_PORTS = 31
    EVALUATION_COMPLETED = 32

    def next(self) -> 'Step':
        """The following step; the terminal step wraps to the first."""
        if self is Step.EVALUATION_COMPLETED:
            return Step.INITIALIZATION
        return Step(self + 1)

    @property
    def family(self) -> StepFamily:
        for last, family in _FAMILY_BOUNDS:
            if self <= last:
                return family
        return StepFamily.COMPLETION


_FAMILY_BOUNDS = (
    (Step.GET_SERIAL_NUMBER, StepFamily.IDENTIFICATION),
    (Step.TEST_DOCKING_BASE, StepFamily.POWER_PLUG),
    (Step.BUTTON_2_RELEASED, StepFamily.BUTTONS),
    (Step.TEST_LEDS, StepFamily.LEDS),
    (Step.TEST_SOUNDS, StepFamily.SOUNDS),
    (Step.TEST_CLIFF_SENSORS, StepFamily.CLIFF),
    (Step.TEST_WHEEL_DROP_SENSORS, StepFamily.WHEEL_DROP),
    (Step.LEFT_BUMPER_RELEASED, StepFamily.BUMPERS),
    (Step.EVAL_MOTORS_CURRENT, StepFamily.MOTORS),
    (Step.MEASURE_GYRO_ERROR, StepFamily.GYROSCOPE),
    (Step.MEASURE_CHARGING, StepFamily.CHARGING),
    (Step.TEST_DIGITAL_IO_PORTS, StepFamily.DIGITAL_IO),
    (Step.TEST_ANALOG_INPUT_PORTS, StepFamily.ANALOG_IO),
)

# Bumper exercised by each group of three bumper steps
BUMPER_ORDER = (Device.BUMPER_C, Device.BUMPER_R, Device.BUMPER_L)

CONFIRMATION_STEPS = {
    Step.TEST_LEDS: ((Device.LED_1, Device.LED_2), "LEDs"),
    Step.TEST_SOUNDS: ((Device.SOUNDS,), "Sounds"),
    Step.TEST_DIGITAL_IO_PORTS: ((Device.D_INPUT, Device.D_OUTPUT), "Digital I/O"),
}

# (command, hold seconds, label shown to the tester)
LED_PATTERN = (
    (LedColor.GREEN, 1.0, "GREEN"),
    (LedColor.BLACK, 0.5, None),
    (LedColor.ORANGE, 1.0, "ORANGE"),
    (LedColor.BLACK, 0.5, None),
    (LedColor.RED, 1.0, "RED"),
    (LedColor.BLACK, 0.5, None),
)

SOUND_PATTERN = tuple(
    (sound, 1.2, sound.name.replace('_', ' '))
    for sound in SoundId
)

CONFIRM_HINT = "Press left function button if so or right otherwise\n"


@dataclass
class StepTransition:
    """Represents a step transition."""
    from_step: Step
    to_step: Step
    serial: str
    timestamp: float = field(default_factory=time.time)


class Sequencer:
    """
    Factory test sequencer.

    Owns the unit record under test, the session ledger and the current
    step. Thread-safe: `on_event()` may run on transport threads while
    `tick()` runs on the control loop.

    Usage:
        sequencer = Sequencer(actuators, CsvResultSink("results.csv"))
        sequencer.on('on_prompt_show', gui.show)

        # transport callbacks:
        sequencer.on_event(Event(EventType.ROBOT_ONLINE))

        # control loop, at config.sequencer.frequency:
        sequencer.tick()
    """

    def __init__(
        self,
        actuators: Actuators,
        result_sink,
        visual_reference=None,
        config: Optional[Config] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        timer_factory=threading.Timer
    ):
        self.config = config if config is not None else Config()
        self.frequency = self.config.sequencer.frequency
        self.ledger = EvaluatedLedger()

        self._actuators = actuators
        self._sink = result_sink
        self._visual = visual_reference
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.RLock()

        self.motion = MotionController(
            publish=actuators.velocity,
            on_complete=self._motion_completed,
            sleep=sleep,
            timer_factory=timer_factory)

        self._unit: Optional[UnitRecord] = None
        self._step = Step.INITIALIZATION
        self._previous_step: Optional[Step] = Step.INITIALIZATION
        self._confirmation_pending = False
        self._tick_count = 0

        # Per-step scratch state
        self._entered_at = 0.0
        self._approach_pending = False
        self._pattern_index = 0
        self._pattern_due = 0.0
        self._pattern_cycles = 0
        self._analog_scan: Optional[AnalogScan] = None
        self._charge_sampling = False

        self._transition_history: List[StepTransition] = []
        self._callbacks: Dict[str, List[Callable]] = {
            'on_step_change': [],
            'on_prompt_show': [],
            'on_prompt_hide': [],
            'on_log': [],
            'on_unit_finalized': [],
        }

        self._handlers = {
            EventType.VERSION_INFO: self._on_version_info,
            EventType.SENSOR_STATE: self._on_sensor_state,
            EventType.DOCK_IR: self._on_dock_ir,
            EventType.IMU: self._on_imu,
            EventType.BUTTON: self._on_button,
            EventType.BUMPER: self._on_bumper,
            EventType.WHEEL_DROP: self._on_wheel_drop,
            EventType.CLIFF: self._on_cliff,
            EventType.POWER: self._on_power,
            EventType.DIGITAL_INPUT: self._on_digital_input,
            EventType.DIAGNOSTICS: self._on_diagnostics,
            EventType.ROBOT_STATUS: self._on_robot_status,
            EventType.ROBOT_ONLINE: self._on_robot_online,
            EventType.ROBOT_OFFLINE: self._on_robot_offline,
        }

        self._actions: Dict[Step, Callable[[bool], None]] = {
            Step.INITIALIZATION: self._step_initialization,
            Step.GET_SERIAL_NUMBER: self._step_get_serial_number,
            Step.TEST_DC_ADAPTER: self._step_dc_adapter,
            Step.TEST_DOCKING_BASE: self._step_docking_base,
            Step.BUTTON_0_PRESSED: self._step_buttons,
            Step.TEST_LEDS: self._step_leds,
            Step.TEST_SOUNDS: self._step_sounds,
            Step.TEST_CLIFF_SENSORS: self._step_cliff_sensors,
            Step.TEST_WHEEL_DROP_SENSORS: self._step_wheel_drop_sensors,
            Step.CENTER_BUMPER_PRESSED: self._step_center_bumper,
            Step.POINT_RIGHT_BUMPER: self._step_point_right_bumper,
            Step.RIGHT_BUMPER_PRESSED: self._step_bumper_approach,
            Step.POINT_LEFT_BUMPER: self._step_point_left_bumper,
            Step.LEFT_BUMPER_PRESSED: self._step_bumper_approach,
            Step.PREPARE_MOTORS_TEST: self._step_prepare_motors,
            Step.TEST_MOTORS_FORWARD: self._step_motors_forward,
            Step.TEST_MOTORS_BACKWARD: self._step_motors_backward,
            Step.TEST_MOTORS_CLOCKWISE: self._step_motors_clockwise,
            Step.TEST_MOTORS_COUNTERCW: self._step_motors_counterclockwise,
            Step.EVAL_MOTORS_CURRENT: self._step_eval_motors,
            Step.TEST_DIGITAL_IO_PORTS: self._step_digital_io,
            Step.TEST_ANALOG_INPUT_PORTS: self._step_analog_input,
            Step.EVALUATION_COMPLETED: self._step_completed,
        }

        # Measurements that suspend the control loop; they run unlocked on the
        # record captured when the step was read
        self._blocking_actions: Dict[Step, Callable[[UnitRecord, bool], None]] = {
            Step.MEASURE_GYRO_ERROR: self._step_gyroscope,
            Step.MEASURE_CHARGING: self._step_charging,
        }

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable) -> None:
        """Register an observer callback."""
        if event not in self._callbacks:
            raise ValueError(f"Unknown sequencer event: {event}")
        self._callbacks[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Callback error ({event}): {e}")

    def _log(self, level: int, message: str) -> None:
        logger.log(level, message)
        self._emit('on_log', level, message)

    def _show(self, title: str, text: str, level: int = logging.INFO) -> None:
        logger.debug(f"Prompt [{title}]: {text}")
        self._emit('on_prompt_show', title, text, level)

    def _hide(self) -> None:
        self._emit('on_prompt_hide')

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def current_step(self) -> Step:
        return self._step

    @property
    def unit(self) -> Optional[UnitRecord]:
        """Record of the robot under test, if any."""
        return self._unit

    @property
    def confirmation_pending(self) -> bool:
        return self._confirmation_pending

    def get_transition_history(self) -> List[StepTransition]:
        with self._lock:
            return self._transition_history.copy()

    # ------------------------------------------------------------------
    # Step transitions
    # ------------------------------------------------------------------

    def _set_step(self, new_step: Step) -> None:
        old_step = self._step
        if new_step == old_step:
            return
        self._step = new_step
        self._transition_history.append(StepTransition(
            from_step=old_step,
            to_step=new_step,
            serial=self._unit.serial if self._unit else ""))
        if len(self._transition_history) > 100:
            self._transition_history = self._transition_history[-50:]
        logger.debug(f"Step transition: {old_step.name} -> {new_step.name}")
        self._emit('on_step_change', old_step, new_step)

    def _advance(self) -> None:
        self._set_step(self._step.next())

    def _motion_completed(self, generation: int) -> None:
        with self._lock:
            # Stopped or re-armed while the expiry was on its way
            if self._unit is not None and self.motion.is_current(generation):
                self._advance()

    def _suspend(self, seconds: float) -> None:
        """Cooperative suspension point of the blocking measurements."""
        self._sleep(seconds)

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Run the current step's action; call once per control period."""
        with self._lock:
            self._tick_count += 1

            if self._unit is None:
                return
            if self.motion.active:
                return

            # Many actions (prompts, resets) run only on the first tick of a step
            step = self._step
            entry = step != self._previous_step
            self._previous_step = step
            if entry:
                self._entered_at = self._clock()

            blocking = self._blocking_actions.get(step)
            if blocking is None:
                self._actions.get(step, self._step_wait)(entry)
                return
            unit = self._unit

        # Blocking measurements run unlocked so events keep flowing
        blocking(unit, entry)

    def _step_wait(self, entry: bool) -> None:
        """Steps driven entirely by events."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _finalize(self) -> None:
        unit = self._unit
        self.motion.stop()
        self._log(logging.INFO, f"Saving results for {unit.serial or 'unidentified robot'}")
        try:
            self._sink.append(unit)
        except OSError as e:
            self._log(logging.ERROR, f"Failed to save results for {unit.serial}: {e}")
        self.ledger.add(unit)
        self._release_unit()
        self._emit('on_unit_finalized', unit, unit.all_ok())

    def _release_unit(self) -> None:
        self._unit = None
        self._confirmation_pending = False
        self._charge_sampling = False
        self._analog_scan = None
        self._set_step(Step.INITIALIZATION)

    def _on_robot_online(self, event: Event) -> None:
        if self._unit is not None:
            self._log(logging.WARNING,
                      f"New robot connected while {self._unit.serial} is still under evaluation; saving...")
            self._finalize()
        else:
            self._log(logging.INFO, "New robot connected")

        self._unit = UnitRecord(seq_id=len(self.ledger))
        self._set_step(Step.INITIALIZATION)
        self._previous_step = None

    def _on_robot_offline(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            self._log(logging.WARNING, "Robot offline event received, but no robot is under evaluation")
            return

        if unit.all_ok():
            self._log(logging.INFO, f"Robot {unit.serial} evaluation successfully completed")
        else:
            self._log(logging.INFO, f"Robot {unit.serial} disconnected without finishing the evaluation")
        self._finalize()

    def _on_version_info(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            return

        # Decode the whole message first so a bad one leaves the record as it was
        udid = [int(word) for word in event.data['udid']]
        hardware = version_text(event.data['hardware'], 2)
        firmware = version_text(event.data['firmware'], 2)
        software = version_text(event.data['software'], 3)

        if unit.device_ok[Device.V_INFO]:
            if unit.same_udid(udid):
                self._log(logging.DEBUG, f"Version info received more than once for {unit.serial}")
                return
            # Late republish from the driver after a robot swap
            old_serial = unit.serial
            unit.set_serial(udid)
            self._log(logging.WARNING,
                      f"Overwriting version info: old SN: {old_serial} / new SN: {unit.serial}")
        else:
            unit.set_serial(udid)

        if unit.serial in self.ledger:
            self._log(logging.ERROR, f"Robot {unit.serial} has been previously evaluated")
            self._show("Known robot",
                       f"Robot {unit.serial} has been previously evaluated. Proceed with a new robot",
                       logging.ERROR)
            self.motion.stop()
            self._release_unit()
            return

        unit.set_versions(hardware, firmware, software)
        unit.verify(Device.V_INFO)
        self._log(logging.INFO,
                  f"UDID: {unit.serial}. Hardware/firmware/software version: {unit.version_nb()}")

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def on_event(self, event: Event) -> None:
        """Dispatch an inbound event to its validation protocol."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            self._log(logging.WARNING, f"Unrecognized event {event.event_type}; ignoring")
            return

        with self._lock:
            try:
                handler(event)
            except (KeyError, TypeError, ValueError) as e:
                self._log(logging.ERROR, f"Malformed {event.event_type.name} event {event.data}: {e}")

    def _on_sensor_state(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            return
        step = self._step

        if Step.TEST_MOTORS_FORWARD <= step <= Step.TEST_MOTORS_COUNTERCW:
            update_motor_peaks(unit, event.data['current'])
            return

        if step == Step.MEASURE_CHARGING:
            if self._charge_sampling and event.data.get('charger'):
                unit.device_val[Device.CHARGING] = int(event.data['battery'])
            return

        if step == Step.TEST_ANALOG_INPUT_PORTS:
            for channel, value in zip(unit.analog_in, event.data['analog_input']):
                channel.sample(int(value))

    def _on_dock_ir(self, event: Event) -> None:
        unit = self._unit
        if unit is None or unit.ir_dock_ok():
            return

        collect_dock_ir(unit, event.data['data'])
        if unit.ir_dock_ok():
            self._log(logging.INFO, "Docking ir sensor evaluation completed: "
                      f"{unit.device_val[Device.IR_DOCK_L]}/{unit.device_val[Device.IR_DOCK_C]}/"
                      f"{unit.device_val[Device.IR_DOCK_R]}")

    def _on_imu(self, event: Event) -> None:
        if self._unit is not None:
            self._unit.imu_data[4] = float(event.data['yaw'])

    def _on_button(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            return
        button = int(event.data['button'])
        state = int(event.data['state'])
        action = "pressed" if state == ButtonState.PRESSED else "released"

        if self._confirmation_pending and self._step in CONFIRMATION_STEPS:
            # Left and right buttons answer the pending question, nothing else
            if state == ButtonState.RELEASED and button in (ACCEPT_BUTTON, REJECT_BUTTON):
                self._resolve_confirmation(button == ACCEPT_BUTTON)
            return

        if unit.buttons_ok():
            return

        if not Step.BUTTON_0_PRESSED <= self._step <= Step.BUTTON_2_RELEASED:
            self._log(logging.DEBUG, f"Button {button} {action}; ignoring")
            return

        progress = self._step - Step.BUTTON_0_PRESSED
        if not ordered_sequence_matches(progress, button, state):
            self._log(logging.WARNING, f"Unexpected button event: {button} {action}")
            return

        self._log(logging.INFO, f"Button {button} {action}, as expected")
        if state == ButtonState.RELEASED:
            unit.verify(BUTTONS[button])
        if self._step == Step.BUTTON_2_RELEASED:
            self._log(logging.INFO, "Buttons evaluation completed")
        self._advance()

    def _resolve_confirmation(self, accepted: bool) -> None:
        devices, label = CONFIRMATION_STEPS[self._step]
        confirm(self._unit, devices, accepted)
        if accepted:
            self._log(logging.INFO, f"{label} evaluation completed")
        else:
            self._log(logging.WARNING, f"{label} didn't pass the test")

        # Stop accepting answers before anything else can arrive
        self._confirmation_pending = False
        self._hide()
        if self._step == Step.TEST_LEDS:
            self._actuators.leds(LedColor.BLACK)
        elif self._step == Step.TEST_DIGITAL_IO_PORTS:
            self._actuators.digital_output(*all_outputs_off())
        self._advance()

    def _on_bumper(self, event: Event) -> None:
        unit = self._unit
        if unit is None or unit.bumpers_ok():
            return
        bumper = Bumper(int(event.data['bumper']))
        state = BumperState(int(event.data['state']))
        action = "pressed" if state == BumperState.PRESSED else "released"

        if not Step.CENTER_BUMPER_PRESSED <= self._step <= Step.LEFT_BUMPER_RELEASED:
            self._log(logging.DEBUG, f"{bumper.name.capitalize()} bumper accidental hit; ignoring")
            return

        expected = BUMPER_ORDER[(self._step - Step.CENTER_BUMPER_PRESSED) // 3]
        device = BUMPERS[bumper]
        if device != expected:
            self._log(logging.WARNING, f"Unexpected bumper event: {bumper.name.lower()} {action}")
            return

        outcome = parity_counter(unit, device, Action(state), BUMPER_TESTS)
        if outcome == Outcome.IGNORED:
            return
        if outcome == Outcome.MISMATCH:
            self._log(logging.WARNING, f"Unexpected bumper event: {bumper.name.lower()} {action}")
            return

        self._log(logging.INFO, f"{bumper.name.capitalize()} bumper {action}, as expected")
        if state == BumperState.PRESSED:
            # Back off the wall; the end of the move opens the next step
            if self._step in (Step.CENTER_BUMPER_PRESSED, Step.RIGHT_BUMPER_PRESSED,
                              Step.LEFT_BUMPER_PRESSED):
                self._advance()
            motion = self.config.motion
            self.motion.move(-motion.bumpers_linear_speed, 0.0, motion.bumpers_backoff_time)
        else:
            self._hide()
            if unit.bumpers_ok():
                self._log(logging.INFO, "Bumper evaluation completed")

    def _on_wheel_drop(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            return
        wheel = Wheel(int(event.data['wheel']))
        state = WheelDropState(int(event.data['state']))
        side = wheel.name.capitalize()
        action = "dropped" if state == WheelDropState.DROPPED else "raised"

        if self._step != Step.TEST_WHEEL_DROP_SENSORS:
            self._log(logging.DEBUG, f"{side} wheel {action} out of its test; ignoring")
            return

        device = Device.W_DROP_R if wheel == Wheel.RIGHT else Device.W_DROP_L
        outcome = parity_counter(unit, device, Action(state),
                                 self.config.thresholds.wheel_drop_tests)
        if outcome == Outcome.IGNORED:
            return
        if outcome == Outcome.MISMATCH:
            self._log(logging.WARNING, f"Unexpected wheel drop event: {side.lower()} wheel {action}")
            return

        self._log(logging.INFO, f"{side} wheel {action}, as expected")
        if outcome == Outcome.VERIFIED:
            self._log(logging.INFO, f"{side} wheel drop evaluation completed")
            if unit.w_drop_ok():
                self._advance()

    def _on_cliff(self, event: Event) -> None:
        unit = self._unit
        if unit is None:
            return
        sensor = CliffSensor(int(event.data['sensor']))
        state = CliffState(int(event.data['state']))
        name = sensor.name.capitalize()
        reading = "cliff" if state == CliffState.CLIFF else "no cliff"

        if self._step != Step.TEST_CLIFF_SENSORS:
            self._log(logging.DEBUG, f"{name} cliff sensor reports {reading} out of its test; ignoring")
            return

        device = {CliffSensor.LEFT: Device.CLIFF_L,
                  CliffSensor.CENTER: Device.CLIFF_C,
                  CliffSensor.RIGHT: Device.CLIFF_R}[sensor]
        outcome = parity_counter(unit, device, Action(state),
                                 self.config.thresholds.cliff_sensor_tests)
        if outcome == Outcome.IGNORED:
            return
        if outcome == Outcome.MISMATCH:
            self._log(logging.WARNING, f"Unexpected cliff sensor event: {name.lower()} sensor reports {reading}")
            return

        self._log(logging.INFO, f"{name} cliff sensor reports {reading}, as expected")
        if outcome == Outcome.VERIFIED:
            self._log(logging.INFO, f"{name} cliff sensor evaluation completed")
            if unit.cliffs_ok():
                self._advance()

    def _on_power(self, event: Event) -> None:
        unit = self._unit
        if unit is None or unit.pwr_src_ok():
            return
        power_event = PowerEvent(int(event.data['event']))

        if self._step not in (Step.TEST_DC_ADAPTER, Step.TEST_DOCKING_BASE):
            # Battery notifications are routine; anything else means the tester
            # is not following the protocol
            if power_event not in BACKGROUND_POWER_EVENTS:
                self._log(logging.WARNING,
                          f"Power event {power_event.name} while current step is {self._step.name}")
            return

        if self._step == Step.TEST_DC_ADAPTER:
            device, plugged, name = Device.PWR_JACK, PowerEvent.PLUGGED_TO_ADAPTER, "Adapter"
        else:
            device, plugged, name = Device.PWR_DOCK, PowerEvent.PLUGGED_TO_DOCKBASE, "Docking base"

        if power_event == plugged:
            action = Action.ENGAGE
        elif power_event == PowerEvent.UNPLUGGED:
            action = Action.RELEASE
        else:
            self._log(logging.WARNING, f"Unexpected power event: {power_event.name}")
            return

        outcome = parity_counter(unit, device, action, self.config.thresholds.power_plug_tests)
        if outcome == Outcome.IGNORED:
            return
        if outcome == Outcome.MISMATCH:
            self._log(logging.WARNING, f"Unexpected power event: {power_event.name}")
            return

        self._log(logging.INFO,
                  f"{name} {'plugged' if action == Action.ENGAGE else 'unplugged'}, as expected")
        if outcome == Outcome.VERIFIED:
            self._log(logging.INFO, f"{name} plugging evaluation completed")
            self._advance()

    def _on_digital_input(self, event: Event) -> None:
        unit = self._unit
        if (unit is None or self._step != Step.TEST_DIGITAL_IO_PORTS or
                unit.device_ok[Device.D_INPUT] or self._confirmation_pending):
            return

        # Inputs and outputs are checked together: each pressed input lights
        # its output LED and the tester confirms the result
        index = first_low_input(event.data['values'])
        if index is not None:
            unit.device_val[Device.D_INPUT] |= 1 << index
            self._actuators.digital_output(*output_channels(index))
            return

        self._actuators.digital_output(*all_outputs_off())
        if unit.device_val[Device.D_INPUT] == (1 << DIGITAL_CHANNELS) - 1:
            self._show("Digital I/O test",
                       "Press left function button if LEDs blinked as expected or right otherwise")
            self._confirmation_pending = True

    def _on_diagnostics(self, event: Event) -> None:
        if self._unit is None:
            return
        lines = []
        for status in event.data['status']:
            lines.append(f"Device: {status.get('name', '')}")
            lines.append(f"Level: {int(status.get('level', 0))}")
            lines.append(f"Message: {status.get('message', '')}")
            for key, value in status.get('values', {}).items():
                lines.append(f"   {key}: {value}")
        self._unit.diagnostics = '\n'.join(lines) + ('\n' if lines else '')

    def _on_robot_status(self, event: Event) -> None:
        unit = self._unit
        if unit is None or unit.state == HealthState.OK:
            return

        # STALE and beyond count as errors
        unit.state = HealthState(min(int(event.data['level']), HealthState.ERROR.value))
        if unit.state == HealthState.OK:
            self._log(logging.INFO, f"Robot {unit.serial} diagnostics received with OK status")
            return

        self._log(logging.WARNING,
                  f"Robot {unit.serial} diagnostics received with {unit.state.name} status")
        if unit.diagnostics:
            self._log(logging.WARNING, f"Full diagnostics:\n{unit.diagnostics}")

    # ------------------------------------------------------------------
    # Step actions
    # ------------------------------------------------------------------

    def _step_initialization(self, entry: bool) -> None:
        self._advance()

    def _step_get_serial_number(self, entry: bool) -> None:
        if self._unit.device_ok[Device.V_INFO]:
            self._advance()
        elif self._tick_count % max(1, int(self.frequency * 2)) == 0:
            self._log(logging.DEBUG, "Waiting for serial number...")

    def _step_dc_adapter(self, entry: bool) -> None:
        if entry:
            self._show("DC adapter plug test",
                       f"Plug and unplug adapter to robot {self.config.thresholds.power_plug_tests} time(s)")

    def _step_docking_base(self, entry: bool) -> None:
        if entry:
            self._show("Docking base plug test",
                       f"Plug and unplug robot to its base {self.config.thresholds.power_plug_tests} time(s)")

    def _step_buttons(self, entry: bool) -> None:
        if entry:
            self._show("Function buttons test",
                       "Press the three function buttons sequentially from left to right")

    def _step_leds(self, entry: bool) -> None:
        self._play_pattern(entry, LED_PATTERN, self._actuators.leds, "LEDs test",
                           "You should see both LEDs blinking in green, orange and red alternatively\n")

    def _step_sounds(self, entry: bool) -> None:
        self._play_pattern(entry, SOUND_PATTERN, self._actuators.sound, "Sounds test",
                           "You should hear sounds for 'On', 'Off', 'Recharge', 'Button', "
                           "'Error', 'Cleaning Start' and 'Cleaning End' continuously\n")

    def _play_pattern(self, entry: bool, pattern: Sequence[Tuple], emit: Callable,
                      title: str, text: str) -> None:
        """Loop an actuator pattern; answers are accepted after the first full cycle."""
        now = self._clock()
        if entry:
            self._pattern_index = 0
            self._pattern_cycles = 0
            self._pattern_due = now
        if now < self._pattern_due:
            return

        value, hold, label = pattern[self._pattern_index]
        emit(value)
        if label:
            hint = CONFIRM_HINT if self._pattern_cycles > 0 else ""
            self._show(title, f"{text}{hint}{label}")
        self._pattern_due = now + hold

        self._pattern_index += 1
        if self._pattern_index == len(pattern):
            self._pattern_index = 0
            self._pattern_cycles += 1
            self._confirmation_pending = True

    def _step_cliff_sensors(self, entry: bool) -> None:
        if entry:
            self._show("Cliff sensors test",
                       f"Raise and lower robot {self.config.thresholds.cliff_sensor_tests} "
                       "time(s) to test cliff sensors")

    def _step_wheel_drop_sensors(self, entry: bool) -> None:
        if entry:
            self._show("Wheel drop sensors test",
                       f"Raise and lower robot {self.config.thresholds.wheel_drop_tests} "
                       "time(s) to test wheel drop sensors")

    def _step_center_bumper(self, entry: bool) -> None:
        if entry:
            self._show("Bumper sensors test",
                       "Place the robot facing a wall; after a while, the robot will move forward")
            self._approach_pending = True
        if self._approach_pending:
            # Give the tester time to step away before launching the robot
            if self._clock() - self._entered_at < self.config.motion.bumpers_approach_delay:
                return
            self._approach_pending = False
        self._step_bumper_approach(entry)

    def _step_bumper_approach(self, entry: bool) -> None:
        self.motion.move(self.config.motion.bumpers_linear_speed, 0.0)

    def _step_point_right_bumper(self, entry: bool) -> None:
        w = self.config.motion.bumpers_angular_speed
        self.motion.move(0.0, +w, (math.pi / 4.0) / w)  # +45 degrees

    def _step_point_left_bumper(self, entry: bool) -> None:
        w = self.config.motion.bumpers_angular_speed
        self.motion.move(0.0, -w, (math.pi / 2.0) / w)  # -90 degrees

    def _step_prepare_motors(self, entry: bool) -> None:
        if entry:
            self._show("Motors current test", "Now the robot will move forward...")
        w = self.config.motion.bumpers_angular_speed
        self.motion.move(0.0, -w, (math.pi / 4.0) / w)  # -45 degrees, parallel to the wall

    def _step_motors_forward(self, entry: bool) -> None:
        m = self.config.motion
        self.motion.move(+m.motors_linear_speed, 0.0, m.motors_distance / m.motors_linear_speed)

    def _step_motors_backward(self, entry: bool) -> None:
        m = self.config.motion
        self._show("Motors current test", "Now the robot will move backward...")
        self.motion.move(-m.motors_linear_speed, 0.0, m.motors_distance / m.motors_linear_speed)

    def _step_motors_clockwise(self, entry: bool) -> None:
        m = self.config.motion
        self._show("Motors current test", "...and spin to evaluate motors")
        self.motion.move(0.0, -m.motors_angular_speed, m.motors_angle / m.motors_angular_speed)

    def _step_motors_counterclockwise(self, entry: bool) -> None:
        m = self.config.motion
        self.motion.move(0.0, +m.motors_angular_speed, m.motors_angle / m.motors_angular_speed)

    def _step_eval_motors(self, entry: bool) -> None:
        unit = self._unit
        self._hide()
        peaks = f"({unit.device_val[Device.MOTOR_L]}, {unit.device_val[Device.MOTOR_R]})"
        if motors_within_limit(unit, self.config.thresholds.motor_max_current):
            self._log(logging.INFO, f"Motors current evaluation completed {peaks}")
        else:
            self._log(logging.WARNING, f"Motors current too high! {peaks}")
        self._advance()

    def _step_gyroscope(self, unit: UnitRecord, entry: bool) -> None:
        self._measure_gyro(unit, entry)
        with self._lock:
            if self._still_testing(unit):
                self._advance()

    def _step_charging(self, unit: UnitRecord, entry: bool) -> None:
        self._measure_charge(unit, entry)
        with self._lock:
            if self._still_testing(unit):
                self._advance()

    def _step_digital_io(self, entry: bool) -> None:
        if entry:
            self._show("Digital I/O test",
                       "Press the four digital input buttons sequentially, from DI-1 to DI-4\n"
                       "The digital output LED below should switch on and off as the result")
            self._unit.device_val[Device.D_INPUT] = 0
            self._actuators.digital_output(*all_outputs_off())

    def _step_analog_input(self, entry: bool) -> None:
        unit = self._unit
        thresholds = self.config.thresholds
        if entry or self._analog_scan is None:
            self._show("Test analogue input",
                       "Turn analogue input screws clockwise and counterclockwise until reaching the limits\n"
                       "The four LEDs below should get illuminated when completed")
            self._actuators.digital_output(*all_outputs_off())
            self._analog_scan = AnalogScan(
                channels=len(unit.analog_in),
                low=thresholds.analog_input_min,
                high=thresholds.analog_input_max,
                pulse_ticks=int(self.frequency * thresholds.analog_pulse_time))

        scan = self._analog_scan
        update = scan.tick(unit.analog_in)
        if update.pulse_ended:
            self._actuators.digital_output(*output_channels(0, 3, on=False))
        if update.covered_low:
            self._actuators.digital_output(*output_channels(0))
        if update.covered_high:
            self._actuators.digital_output(*output_channels(3))
        unit.device_val[Device.A_INPUT] = scan.value

        if scan.complete:
            self._log(logging.INFO, "Analogue input evaluation completed")
            unit.verify(Device.A_INPUT)
            self._hide()
            self._analog_scan = None
            self._advance()

    def _step_completed(self, entry: bool) -> None:
        result = "PASS" if self._unit.all_ok() else "FAILED"
        self._show("Evaluation result", f"Evaluation completed. Overall result: {result}")
        self._finalize()

    # ------------------------------------------------------------------
    # Blocking measurements
    # ------------------------------------------------------------------

    def _still_testing(self, unit: Optional[UnitRecord]) -> bool:
        """False once the robot was finalized during a suspension."""
        return unit is not None and self._unit is unit

    def _measure_gyro(self, unit: UnitRecord, entry: bool) -> bool:
        """
        Cross-check the gyroscope against the camera looking at the robot.

        Takes a reference yaw, spins one turn clockwise and one back, and
        takes a second reference. The gyro passes if its offset against the
        camera is the same before and after the spins.

        Returns False if the test was aborted.
        """
        if not self._still_testing(unit):
            return False

        camera = self.config.camera
        if entry:
            self._show("Gyroscope test", "Place the robot with the check board right below the camera")

        if self._visual is None or not self._visual.init(camera.calibration_file, camera.device_index):
            self._log(logging.ERROR, "Gyroscope test initialization failed; aborting test")
            self._hide()
            return False

        for leg in range(2):
            reference_yaw = self._acquire_reference_yaw(unit)
            if not self._still_testing(unit):
                return False
            if reference_yaw is None:
                self._log(logging.ERROR, f"Cannot recognize the check board after {camera.max_attempts} "
                          "attempts; gyroscope test aborted")
                self._show("Gyroscope test", "Check board not recognized; gyroscope test aborted",
                           logging.ERROR)
                return False

            with self._lock:
                if not self._still_testing(unit):
                    return False
                onboard_yaw = unit.imu_data[4]
                diff = yaw_difference(onboard_yaw, reference_yaw)
                unit.imu_data[leg * 2] = onboard_yaw
                unit.imu_data[leg * 2 + 1] = diff
                unit.device_val[Device.IMU_DEV] += 1
                self._log(logging.INFO, f"Gyroscope test {leg + 1} result: imu yaw = {onboard_yaw:.3f} / "
                          f"vo yaw = {reference_yaw:.3f} / diff = {diff:.3f}")

            if leg == 0:
                w = self.config.motion.gyro_angular_speed
                duration = self.config.motion.gyro_angle / w
                self.motion.move(0.0, +w, duration, blocking=True)
                if not self._still_testing(unit):
                    return False
                self.motion.move(0.0, -w, duration, blocking=True)
                if not self._still_testing(unit):
                    return False

        with self._lock:
            if not self._still_testing(unit):
                return False
            diff_1, diff_2 = unit.imu_data[1], unit.imu_data[3]
            if gyro_consistent(diff_1, diff_2, self.config.thresholds.gyro_camera_max_diff):
                unit.verify(Device.IMU_DEV)
                self._log(logging.INFO,
                          f"Gyroscope testing successful: diff 1 = {diff_1:.3f} / diff 2 = {diff_2:.3f}")
            else:
                self._log(logging.WARNING,
                          f"Gyroscope testing failed: diff 1 = {diff_1:.3f} / diff 2 = {diff_2:.3f}")
        self._hide()
        return True

    def _acquire_reference_yaw(self, unit: UnitRecord) -> Optional[float]:
        """Poll the camera until it sees the check board; None on timeout."""
        camera = self.config.camera
        warned = False
        for _ in range(camera.max_attempts):
            self._suspend(camera.poll_interval)
            if not self._still_testing(unit):
                return None

            yaw = self._visual.current_yaw()
            if not math.isnan(yaw):
                self._hide()
                return -yaw  # the camera looks AT the robot

            if not warned:
                self._show("Gyroscope test",
                           "Cannot recognize the check board; please place the robot right below the camera",
                           logging.WARNING)
                warned = True
        return None

    def _measure_charge(self, unit: UnitRecord, entry: bool) -> bool:
        """
        Check that the battery voltage rises while plugged to the adapter.

        Returns False if the test was aborted.
        """
        if not self._still_testing(unit):
            return False

        thresholds = self.config.thresholds
        if entry:
            self._show("Charge measurement",
                       f"Plug the adaptor to the robot and wait {math.ceil(thresholds.measure_charge_time)} seconds")

        with self._lock:
            if not self._still_testing(unit):
                return False
            unit.device_val[Device.CHARGING] = 0
            self._charge_sampling = True

        # Wait until charging starts (and a bit more) to take the first sample
        period = 1.0 / self.frequency
        for _ in range(int(round(thresholds.charge_start_timeout * self.frequency))):
            if unit.device_val[Device.CHARGING] != 0:
                break
            self._suspend(period)
            if not self._still_testing(unit):
                return False

        self._hide()
        if unit.device_val[Device.CHARGING] == 0:
            with self._lock:
                self._charge_sampling = False
            self._log(logging.ERROR, f"Adaptor not plugged after {thresholds.charge_start_timeout:g} "
                      "seconds; aborting charge measurement")
            self._show("Charge measurement", "Adaptor not plugged; charge measurement aborted",
                       logging.ERROR)
            return False

        self._suspend(thresholds.charge_settle_time)
        if not self._still_testing(unit):
            return False
        v1 = unit.device_val[Device.CHARGING]

        self._suspend(thresholds.measure_charge_time)
        if not self._still_testing(unit):
            return False

        with self._lock:
            if not self._still_testing(unit):
                return False
            self._charge_sampling = False
            v2 = unit.device_val[Device.CHARGING]
            delta, charged = charge_verdict(v1, v2, thresholds.min_power_charged)
            unit.device_val[Device.CHARGING] = delta
            message = (f"Charge measurement: {delta / 10.0:.1f} V in "
                       f"{int(round(thresholds.measure_charge_time))} seconds")
            if charged:
                unit.verify(Device.CHARGING)
                self._log(logging.INFO, message)
            else:
                self._log(logging.WARNING, message)
        return True
