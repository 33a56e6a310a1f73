"""Fire-and-forget billing notices delivered over an email provider."""
from __future__ import annotations

import html
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Callable, Optional, Tuple

from ..billing.catalog import format_amount, get_plan_definition
from ..billing.models import PlanKey
from .config import EmailConfig
from .providers import EmailProvider

logger = logging.getLogger(__name__)

Task = Callable[[], None]
Dispatcher = Callable[[Task], None]

_HTML_SHELL = (
    "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; line-height: 1.5; color: #0f172a;\">"
    "{body}"
    "</body></html>"
)


def run_inline(task: Task) -> None:
    task()


class ThreadPoolDispatcher:
    """Runs notification tasks on a small background pool."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="billing-email")

    def __call__(self, task: Task) -> None:
        self._executor.submit(task)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def render_downgrade_notice(previous_plan: PlanKey, config: EmailConfig) -> Tuple[str, str, str]:
    plan_name = get_plan_definition(previous_plan).display_name
    billing_url = f"{config.app_base_url}/dashboard/billing"
    subject = f"Your {config.product_name} {plan_name} subscription has ended"
    text_body = (
        "Hello,\n\n"
        f"Your {plan_name} subscription has ended and your account is now on the Free plan. "
        "Your existing invoices and data are unchanged.\n\n"
        f"You can resubscribe at any time: {billing_url}\n"
    )
    html_body = _HTML_SHELL.format(
        body=(
            "<p>Hello,</p>"
            f"<p>Your <strong>{html.escape(plan_name)}</strong> subscription has ended and your account "
            "is now on the Free plan. Your existing invoices and data are unchanged.</p>"
            f"<p><a href=\"{html.escape(billing_url)}\">Resubscribe</a> at any time.</p>"
        )
    )
    return subject, text_body, html_body


def render_reactivation_notice(plan: PlanKey, config: EmailConfig) -> Tuple[str, str, str]:
    plan_name = get_plan_definition(plan).display_name
    subject = f"Your {config.product_name} {plan_name} subscription has been reactivated"
    text_body = (
        "Hello,\n\n"
        f"Your {plan_name} subscription will keep renewing as usual. "
        "The pending cancellation has been removed.\n"
    )
    html_body = _HTML_SHELL.format(
        body=(
            "<p>Hello,</p>"
            f"<p>Your <strong>{html.escape(plan_name)}</strong> subscription will keep renewing as usual. "
            "The pending cancellation has been removed.</p>"
        )
    )
    return subject, text_body, html_body


def render_credits_purchased_notice(
    quantity: int, total: Decimal, new_balance: int, config: EmailConfig, currency: str = "usd"
) -> Tuple[str, str, str]:
    unit = "credit" if quantity == 1 else "credits"
    amount = format_amount(total, currency)
    subject = f"{config.product_name}: {quantity} {unit} added"
    text_body = (
        "Hello,\n\n"
        f"Thanks for your purchase. {quantity} {unit} were added for {amount}.\n"
        f"Your balance is now {new_balance}.\n"
    )
    html_body = _HTML_SHELL.format(
        body=(
            "<p>Hello,</p>"
            f"<p>Thanks for your purchase. <strong>{quantity} {unit}</strong> were added for {amount}.</p>"
            f"<p>Your balance is now <strong>{new_balance}</strong>.</p>"
        )
    )
    return subject, text_body, html_body


class EmailBillingNotifier:
    """Sends billing notices without blocking or failing the caller.

    Delivery is retried ``config.max_attempts`` times with linear backoff.
    Failures are logged and never raised.
    """

    def __init__(
        self,
        provider: EmailProvider,
        config: EmailConfig,
        *,
        dispatcher: Optional[Dispatcher] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._config = config
        self._dispatch = dispatcher or ThreadPoolDispatcher()
        self._sleep = sleep

    def send_downgrade_notice(self, email: str, previous_plan: PlanKey) -> None:
        subject, text_body, html_body = render_downgrade_notice(previous_plan, self._config)
        self._submit("downgrade", email, subject, html_body, text_body)

    def send_reactivation_notice(self, email: str, plan: PlanKey) -> None:
        subject, text_body, html_body = render_reactivation_notice(plan, self._config)
        self._submit("reactivation", email, subject, html_body, text_body)

    def send_credits_purchased_notice(
        self, email: str, quantity: int, total: Decimal, new_balance: int, currency: str = "usd"
    ) -> None:
        subject, text_body, html_body = render_credits_purchased_notice(
            quantity, total, new_balance, self._config, currency
        )
        self._submit("credits_purchased", email, subject, html_body, text_body)

    def _submit(self, kind: str, recipient: str, subject: str, html_body: str, text_body: str) -> None:
        def task() -> None:
            self._deliver(kind, recipient, subject, html_body, text_body)

        try:
            self._dispatch(task)
        except Exception:
            logger.exception("Failed to schedule %s email", kind, extra={"email_recipient": recipient})

    def _deliver(self, kind: str, recipient: str, subject: str, html_body: str, text_body: str) -> bool:
        attempts = max(1, self._config.max_attempts)
        backoff = max(0.0, self._config.backoff_seconds)

        for attempt in range(1, attempts + 1):
            try:
                self._provider.send_email(recipient, subject, html_body, text_body)
            except Exception:
                logger.exception(
                    "Failed to send %s email",
                    kind,
                    extra={
                        "email_recipient": recipient,
                        "email_attempt": attempt,
                        "email_attempts": attempts,
                    },
                )
                if attempt >= attempts:
                    return False
                if backoff > 0:
                    self._sleep(backoff * attempt)
                continue

            logger.info(
                "Billing email dispatched",
                extra={"email_type": kind, "email_recipient": recipient, **self._provider.describe()},
            )
            return True
        return False


__all__ = [
    "EmailBillingNotifier",
    "ThreadPoolDispatcher",
    "render_credits_purchased_notice",
    "render_downgrade_notice",
    "render_reactivation_notice",
    "run_inline",
]
