"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ... import app_context
from ..billing import (
    Account,
    AccountNotFoundError,
    BillingError,
    ConcurrentUpdateError,
    PaymentNotFoundError,
    PlanChangeRejected,
    ProviderError,
    SubAccountNotFoundError,
    TopupRejected,
    WebhookVerificationError,
)
from ..credits.models import CreditKind
from ..feature_gates import FeatureGateError, require_usage
from ..schemas.billing import (
    CancellationResponse,
    CreditBalanceResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanSyncResponse,
    ReactivationResponse,
    TopupConfirmRequest,
    TopupConfirmResponse,
    TopupIntentRequest,
    TopupIntentResponse,
    TrialStatusResponse,
    UsageDecisionResponse,
    WebhookAckResponse,
)
from ..services import billing as billing_services

logger = logging.getLogger("billing")


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):  # pragma: no cover - resolved through the application context
    return app_context.get_current_user(session_token=session_token)


def _http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, (PlanChangeRejected, TopupRejected, WebhookVerificationError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, (AccountNotFoundError, SubAccountNotFoundError, PaymentNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConcurrentUpdateError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if code >= 500:
        logger.error("Billing request failed: %s", exc, exc_info=exc)
    return HTTPException(status_code=code, detail=str(exc))


def _require_account(current_user) -> Account:
    repository = billing_services.get_account_repository()
    account = repository.get_account_by_user_id(str(current_user.id))
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Billing account not found")
    return account


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/plan-change", response_model=PlanChangeResponse)
def request_plan_change(
    payload: PlanChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PlanChangeResponse:
    orchestrator = billing_services.get_plan_change_orchestrator()
    try:
        result = orchestrator.request_plan_change(
            str(current_user.id), payload.plan, payload.billing_interval
        )
    except BillingError as exc:
        raise _http_error(exc) from exc
    return PlanChangeResponse.from_result(result)


@router.post("/subscription/cancel", response_model=CancellationResponse)
def cancel_subscription(*, current_user=Depends(_get_current_user)) -> CancellationResponse:
    orchestrator = billing_services.get_plan_change_orchestrator()
    try:
        result = orchestrator.cancel_subscription(str(current_user.id))
    except BillingError as exc:
        raise _http_error(exc) from exc
    return CancellationResponse.from_result(result)


@router.post("/subscription/reactivate", response_model=ReactivationResponse)
def reactivate_subscription(*, current_user=Depends(_get_current_user)) -> ReactivationResponse:
    orchestrator = billing_services.get_plan_change_orchestrator()
    try:
        result = orchestrator.reactivate_subscription(str(current_user.id))
    except BillingError as exc:
        raise _http_error(exc) from exc
    return ReactivationResponse.from_result(result)


@router.post("/sync-plan", response_model=PlanSyncResponse)
def sync_plan(*, current_user=Depends(_get_current_user)) -> PlanSyncResponse:
    orchestrator = billing_services.get_plan_change_orchestrator()
    try:
        result = orchestrator.sync_plan(str(current_user.id))
    except BillingError as exc:
        raise _http_error(exc) from exc
    return PlanSyncResponse.from_result(result)


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAckResponse:
    raw_body = await request.body()
    processor = billing_services.get_webhook_processor()
    try:
        result = await run_in_threadpool(processor.handle_event, raw_body, stripe_signature)
    except WebhookVerificationError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise _http_error(exc) from exc
    except BillingError as exc:
        raise _http_error(exc) from exc
    return WebhookAckResponse.from_result(result)


@router.post("/credits/topup-intent", response_model=TopupIntentResponse)
def create_topup_intent(
    payload: TopupIntentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> TopupIntentResponse:
    service = billing_services.get_topup_service()
    try:
        intent = service.create_topup_intent(
            str(current_user.id), payload.business_id, payload.kind, payload.quantity
        )
    except BillingError as exc:
        raise _http_error(exc) from exc
    return TopupIntentResponse.from_intent(intent)


@router.post("/credits/confirm", response_model=TopupConfirmResponse)
def confirm_topup(
    payload: TopupConfirmRequest,
    *,
    current_user=Depends(_get_current_user),
) -> TopupConfirmResponse:
    processor = billing_services.get_webhook_processor()
    try:
        confirmation = processor.confirm_topup(str(current_user.id), payload.payment_intent_id)
    except BillingError as exc:
        raise _http_error(exc) from exc
    return TopupConfirmResponse.from_confirmation(confirmation)


@router.post("/businesses/{business_id}/authorize-usage", response_model=UsageDecisionResponse)
def authorize_usage(
    business_id: int,
    kind: CreditKind = Query(CreditKind.INVOICE),
    *,
    current_user=Depends(_get_current_user),
) -> UsageDecisionResponse:
    account = _require_account(current_user)
    enforcer = billing_services.get_limit_enforcer()
    try:
        decision = require_usage(enforcer, business_id, account.plan, kind, owner_id=account.account_id)
    except FeatureGateError as exc:
        raise exc.to_http_exception() from exc
    except BillingError as exc:
        raise _http_error(exc) from exc
    return UsageDecisionResponse.from_decision(decision)


@router.get("/businesses/{business_id}/credits", response_model=CreditBalanceResponse)
def get_credit_balances(
    business_id: int,
    *,
    current_user=Depends(_get_current_user),
) -> CreditBalanceResponse:
    ledger = billing_services.get_credit_ledger()
    if not ledger.sub_account_exists(business_id, owner_id=str(current_user.id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Business not found")
    try:
        balances = [ledger.get_balance(business_id, kind) for kind in CreditKind]
    except SubAccountNotFoundError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(business_id=business_id, balances=balances)


@router.get("/trial-status", response_model=TrialStatusResponse)
def get_trial_status(*, current_user=Depends(_get_current_user)) -> TrialStatusResponse:
    account = _require_account(current_user)
    return TrialStatusResponse(has_used_trial=account.trial_used)
