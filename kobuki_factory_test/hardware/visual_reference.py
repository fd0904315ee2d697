"""
Visual Reference
================

Yaw of the robot as seen by a camera looking down at a check board fixed
on top of it. Used as the external reference of the gyroscope test.
Supports a real OpenCV estimator and a scripted mock for testing.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple

import numpy as np
import yaml

logger = logging.getLogger(__name__)


class VisualReferenceBase(ABC):
    """
    Abstract base class for visual yaw references.

    `current_yaw()` returns NaN whenever the board is not recognized.
    """

    @abstractmethod
    def init(self, calibration_path: str, device_index: int) -> bool:
        """Open the camera and load its calibration."""
        pass

    @abstractmethod
    def current_yaw(self) -> float:
        """Board yaw in the camera frame, radians."""
        pass

    def close(self) -> None:
        pass


def load_calibration(path: str) -> Tuple[np.ndarray, np.ndarray]:
    """
    Read a ROS camera_info style YAML calibration.

    Returns:
        (camera_matrix 3x3, distortion coefficients)
    """
    with open(path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    try:
        matrix = raw['camera_matrix']
        camera_matrix = np.array(matrix['data'], dtype=np.float64).reshape(
            matrix.get('rows', 3), matrix.get('cols', 3))
        distortion = np.array(raw['distortion_coefficients']['data'], dtype=np.float64)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed calibration file {path}: {e}") from e
    return camera_matrix, distortion


def board_points(cols: int, rows: int, square_size: float) -> np.ndarray:
    """Inner corner coordinates of the check board, in its own plane."""
    points = np.zeros((cols * rows, 3), np.float32)
    points[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2) * square_size
    return points


def rotation_yaw(rotation: np.ndarray) -> float:
    """Rotation about the optical axis of a 3x3 rotation matrix."""
    return math.atan2(rotation[1, 0], rotation[0, 0])


class ChessboardYawEstimator(VisualReferenceBase):
    """
    Real yaw estimator using OpenCV chessboard pose estimation.
    """

    def __init__(self, board_cols: int = 8, board_rows: int = 6, square_size: float = 0.025):
        self.pattern_size = (board_cols, board_rows)
        self._object_points = board_points(board_cols, board_rows, square_size)
        self._camera_matrix: Optional[np.ndarray] = None
        self._distortion: Optional[np.ndarray] = None
        self._cap = None
        self._lock = threading.Lock()

    def init(self, calibration_path: str, device_index: int) -> bool:
        if self._cap is not None:
            return True

        if not calibration_path:
            logger.error("No camera calibration file configured")
            return False
        try:
            self._camera_matrix, self._distortion = load_calibration(calibration_path)
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error(f"Failed to load camera calibration: {e}")
            return False

        try:
            import cv2
            cap = cv2.VideoCapture(device_index)
            if not cap.isOpened():
                logger.error(f"Failed to open camera {device_index}")
                return False
        except Exception as e:
            logger.error(f"Failed to open camera: {e}")
            return False

        self._cap = cap
        logger.info(f"Visual reference ready on camera {device_index}")
        return True

    def current_yaw(self) -> float:
        if self._cap is None:
            return math.nan

        import cv2
        with self._lock:
            ret, frame = self._cap.read()
        if not ret or frame is None:
            logger.warning("Failed to read frame")
            return math.nan

        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        found, corners = cv2.findChessboardCorners(gray, self.pattern_size)
        if not found:
            return math.nan

        corners = cv2.cornerSubPix(
            gray, corners, (11, 11), (-1, -1),
            (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001))
        ok, rvec, _ = cv2.solvePnP(self._object_points, corners,
                                   self._camera_matrix, self._distortion)
        if not ok:
            return math.nan

        rotation, _ = cv2.Rodrigues(rvec)
        return rotation_yaw(rotation)

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera closed")


class MockVisualReference(VisualReferenceBase):
    """
    Scripted visual reference for testing without a camera.

    Yields the given yaws one per poll (NaN meaning "board not seen") and
    repeats the last one once exhausted.
    """

    def __init__(self, yaws: Iterable[float] = (0.0,), init_ok: bool = True):
        self.yaws: List[float] = list(yaws)
        self.init_ok = init_ok
        self.polls = 0
        self._index = 0

    def init(self, calibration_path: str, device_index: int) -> bool:
        logger.info("Mock visual reference initialized")
        return self.init_ok

    def current_yaw(self) -> float:
        self.polls += 1
        if not self.yaws:
            return math.nan
        yaw = self.yaws[min(self._index, len(self.yaws) - 1)]
        self._index += 1
        return yaw


def create_visual_reference(
    use_mock: bool = False,
    config: Optional[object] = None,
    **kwargs
) -> VisualReferenceBase:
    """
    Factory function to create a visual reference.

    Args:
        use_mock: Use the scripted mock instead of a camera
        config: Configuration object
        **kwargs: Additional arguments

    Returns:
        Visual reference instance
    """
    if use_mock:
        return MockVisualReference(**kwargs)

    if config:
        kwargs.setdefault('board_cols', config.camera.board_cols)
        kwargs.setdefault('board_rows', config.camera.board_rows)
        kwargs.setdefault('square_size', config.camera.square_size)
    return ChessboardYawEstimator(**kwargs)
