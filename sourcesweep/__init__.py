"""SourceSweep: retire stale log sources, hosts and agents with rollback."""

__version__ = "1.0.0"
