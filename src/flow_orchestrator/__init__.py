"""flow-orchestrator - drives design/analyze/implement/verify/merge workflows."""

__version__ = "0.1.0"
