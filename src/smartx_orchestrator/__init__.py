"""Multi-tenant AI pipeline orchestrator."""

__version__ = "0.1.0"
