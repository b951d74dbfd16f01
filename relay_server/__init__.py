"""
Relay Server - signaling and control relay for robot tele-operation.

This module runs on the relay host and:
- Accepts WebSocket connections from robots and headsets
- Forwards WebRTC signaling between a headset and its selected robot
- Gates every headset control command before it reaches a robot
"""

__version__ = "1.0.0"
