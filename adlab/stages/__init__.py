"""
ADLAB STAGES SYSTEM
Experiment construction and lifecycle

This package contains:
- builder: campaign, ad set and per-variant ad creation
- lifecycle: status state machine and winner declaration
- cleanup: deletion of orphaned remote objects
"""

from .builder import ExperimentBuilder, BuilderConfig
from .lifecycle import ExperimentLifecycle, ALLOWED_TRANSITIONS
from .cleanup import Cleanup, CleanupReport

__all__ = [
    'ExperimentBuilder', 'BuilderConfig',
    'ExperimentLifecycle', 'ALLOWED_TRANSITIONS',
    'Cleanup', 'CleanupReport',
]
