"""
Kinetic Client - Live gesture session client for the particle visualizer.

Captures low-resolution camera frames, streams them to a remote gesture
inference service over WebSocket, and applies the partial particle state
updates it sends back.

NO RENDERING DEPENDENCIES.
"""

__version__ = "1.0.0"
