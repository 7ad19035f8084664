"""
ADLAB EXPERIMENT ENGINE
Multi-variant creative experiments on the Meta ads platform

This package contains:
- rules: objective / call-to-action vocabulary and budget planning
- stages: experiment builder, lifecycle state machine, orphan cleanup
- analytics: metric derivation, insights sync, KPI trends
- integrations: Meta Marketing API client and Slack notifications
- infrastructure: SQLite store, scheduler, error taxonomy, creative storage
"""

__version__ = "1.0.0"
