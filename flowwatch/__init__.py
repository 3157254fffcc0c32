"""Real-time execution monitor for agent flow graphs."""

__version__ = "0.1.0"
