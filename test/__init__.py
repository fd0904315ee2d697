"""
Kobuki Factory Test - Test Suite
================================

Hardware-free tests of the sequencer, validation protocols and support code.

Test Categories:
    - unit/test_sequencer.py        : Step state machine and device protocols end to end
    - unit/test_protocols.py        : Validation protocol building blocks
    - unit/test_motion.py           : Timed and blocking scripted moves
    - unit/test_robot.py            : Unit record and ledger
    - unit/test_results.py          : CSV result sink
    - unit/test_config.py           : Configuration loading
    - unit/test_visual_reference.py : Gyroscope visual reference

Usage:
    # Run all tests
    pytest test/

    # Run specific test with verbose output
    pytest test/unit/test_sequencer.py -v
"""

__version__ = "1.0.0"
