"""Loop continuation engine and heartbeat supervisor for autonomous CLI agents."""

__version__ = "0.1.0"
