"""
ADLAB INTEGRATIONS SYSTEM
External service integrations

This package contains:
- meta_client: Meta Marketing API client
- slack: Slack notifications and alerts
"""

from .meta_client import MetaClient, MetaClientFactory, ClientConfig, AccountAuth

from .slack import (
    notify, alert_error, alert_budget_clamped, alert_build_result,
    alert_sweep_report, alert_credential_expired,
)

__all__ = [
    'MetaClient', 'MetaClientFactory', 'ClientConfig', 'AccountAuth',
    # Slack functions
    'notify', 'alert_error', 'alert_budget_clamped', 'alert_build_result',
    'alert_sweep_report', 'alert_credential_expired',
]
