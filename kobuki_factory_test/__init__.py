"""
Kobuki Factory Test Package
===========================

End-of-line acceptance test for Kobuki mobile bases. One robot at a time
is driven through a fixed sequence of device checks; the verdict of every
robot is appended to a results file.

Subpackages:
    - core:      Sequencer, validation protocols, unit records, config
    - hardware:  Visual reference (camera + check board) for the gyro test
    - nodes:     ROS2 entry point bridging the robot driver to the sequencer

Example:
    from kobuki_factory_test.core import Sequencer, CsvResultSink
    from kobuki_factory_test.hardware import create_visual_reference
"""

__version__ = '1.0.0'
