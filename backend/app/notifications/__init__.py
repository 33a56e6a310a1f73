"""Outbound billing notices."""

from .billing import (
    EmailBillingNotifier,
    ThreadPoolDispatcher,
    render_credits_purchased_notice,
    render_downgrade_notice,
    render_reactivation_notice,
    run_inline,
)
from .config import EmailConfig, load_email_config
from .providers import DevPrintProvider, EmailProvider, SMTPProvider, create_email_provider

__all__ = [
    "DevPrintProvider",
    "EmailBillingNotifier",
    "EmailConfig",
    "EmailProvider",
    "SMTPProvider",
    "ThreadPoolDispatcher",
    "create_email_provider",
    "load_email_config",
    "render_credits_purchased_notice",
    "render_downgrade_notice",
    "render_reactivation_notice",
    "run_inline",
]
