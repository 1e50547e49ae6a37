"""Multi-turn orchestration of autonomous coding-agent CLIs."""

__version__ = "0.1.0"
