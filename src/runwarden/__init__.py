"""RunWarden - Runbook orchestration and self-healing automation."""

__version__ = "0.1.0"
