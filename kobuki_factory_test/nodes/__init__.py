"""
ROS2 Nodes for the Kobuki Factory Test
======================================

Use ``ros2 run kobuki_factory_test factory_test_node`` or import directly.

Active nodes:
    factory_test_node    Sequencer bridged to the Kobuki driver topics
"""
