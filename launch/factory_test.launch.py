"""
Factory Test Launch File
========================

Starts the Kobuki driver and the factory test node.

Usage:
    ros2 launch kobuki_factory_test factory_test.launch.py
    ros2 launch kobuki_factory_test factory_test.launch.py result_file:=/data/results.csv
"""

import os
from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.conditions import IfCondition
from launch.substitutions import LaunchConfiguration
from launch_ros.actions import Node
from launch_ros.parameter_descriptions import ParameterValue
from ament_index_python.packages import get_package_share_directory


def generate_launch_description():
    # Get package directory
    pkg_dir = get_package_share_directory('kobuki_factory_test')
    default_config = os.path.join(pkg_dir, 'config', 'factory_test.yaml')

    # Launch arguments
    config_file_arg = DeclareLaunchArgument(
        'config_file',
        default_value=default_config,
        description='Factory test YAML configuration'
    )

    result_file_arg = DeclareLaunchArgument(
        'result_file',
        default_value='',
        description='CSV results file (overrides the configuration)'
    )

    camera_index_arg = DeclareLaunchArgument(
        'camera_device_index',
        default_value='-1',
        description='Camera looking at the check board (-1 keeps the configuration)'
    )

    calibration_arg = DeclareLaunchArgument(
        'camera_calibration_file',
        default_value='',
        description='Camera calibration, ROS camera_info YAML'
    )

    use_driver_arg = DeclareLaunchArgument(
        'use_kobuki_driver',
        default_value='true',
        description='Start the Kobuki driver alongside the test node'
    )

    # Kobuki driver (sensors, events, commands)
    kobuki_node = Node(
        package='kobuki_node',
        executable='kobuki_ros_node',
        name='kobuki_ros_node',
        output='screen',
        condition=IfCondition(LaunchConfiguration('use_kobuki_driver')),
    )

    # Factory test sequencer
    factory_test_node = Node(
        package='kobuki_factory_test',
        executable='factory_test_node',
        name='factory_test_node',
        output='screen',
        parameters=[{
            'config_file': ParameterValue(LaunchConfiguration('config_file'), value_type=str),
            'result_file': ParameterValue(LaunchConfiguration('result_file'), value_type=str),
            'camera_device_index': ParameterValue(LaunchConfiguration('camera_device_index'), value_type=int),
            'camera_calibration_file': ParameterValue(
                LaunchConfiguration('camera_calibration_file'), value_type=str),
        }]
    )

    return LaunchDescription([
        config_file_arg,
        result_file_arg,
        camera_index_arg,
        calibration_arg,
        use_driver_arg,
        kobuki_node,
        factory_test_node,
    ])
