"""Lightning-rod — board-side agent for the IoTronic/Stack4Things orchestrator."""

__version__ = "1.0.0"
