"""
corchestra - Lightweight service-stack supervisor

Starts interdependent services in dependency order, waits for each to be
healthy before starting its dependents, keeps named volumes across restarts,
and restarts failed services according to their restart policy.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["Orchestrator", "StackConfig", "load_config"]

from .config import StackConfig, load_config
from .orchestrator import Orchestrator
