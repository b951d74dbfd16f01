"""
Relay Client - simulated robot and headset endpoints.

This module connects to a relay server over WebSocket and plays either
role of the protocol, so the relay can be exercised without hardware.
"""

__version__ = "1.0.0"
