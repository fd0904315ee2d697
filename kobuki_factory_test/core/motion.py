"""
Scripted Motion
===============

Velocity commands with a predetermined duration. At most one delayed stop
is pending at any time; arming a new one cancels the previous.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class MotionController:
    """
    Issues velocity commands and schedules the matching stop.

    Args:
        publish: Callable taking (linear, angular) that sends the command
        on_complete: Called with the motion generation after a non-blocking
            timed motion has stopped; check it with `is_current()`
        sleep: Suspension used by blocking moves
        timer_factory: Builds the one-shot timer, threading.Timer signature

    Usage:
        motion = MotionController(actuators.velocity, on_complete=advance)
        motion.move(0.2, 0.0, duration=2.0)   # returns at once, stops later
        motion.move(0.0, 1.0, 6.3, blocking=True)
    """

    def __init__(
        self,
        publish: Callable[[float, float], None],
        on_complete: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        timer_factory: Callable[..., threading.Timer] = threading.Timer
    ):
        self._publish = publish
        self._on_complete = on_complete
        self._sleep = sleep
        self._timer_factory = timer_factory
        self._timer = None
        self._generation = 0
        self._lock = threading.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        """A non-blocking timed motion is still on course."""
        return self._active

    def is_current(self, generation: int) -> bool:
        """The timed motion of this generation was neither stopped nor replaced."""
        with self._lock:
            return generation == self._generation

    def move(self, linear: float, angular: float,
             duration: float = 0.0, blocking: bool = False) -> None:
        self._publish(linear, angular)
        if duration <= 0.0:
            return

        if blocking:
            self._sleep(duration)
            self._publish(0.0, 0.0)
            return

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(duration, self._expired, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            self._active = True
        timer.start()

    def stop(self) -> None:
        """Cancel any pending timed motion and halt the robot."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._active = False
        self._publish(0.0, 0.0)

    def _expired(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return  # cancelled while firing
            self._timer = None
        self._publish(0.0, 0.0)
        try:
            if self._on_complete:
                self._on_complete(generation)
        except Exception as e:
            logger.error(f"Motion completion callback error: {e}")
        finally:
            with self._lock:
                if generation == self._generation:
                    self._active = False
