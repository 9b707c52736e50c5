"""taskloop - multi-worker task orchestrator for autonomous coding agents."""

__version__ = "0.1.0"
