"""hostkeep - resumable host backup and restore orchestrator."""

__version__ = "0.3.0"
__author__ = "hostkeep maintainers"
