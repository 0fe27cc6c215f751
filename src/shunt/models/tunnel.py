"""Tunnel container models."""

from enum import Enum


class TunnelState(Enum):
    """Lifecycle state of a tunnel container."""
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"
