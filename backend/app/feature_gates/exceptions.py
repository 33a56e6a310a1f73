"""Errors raised when a gated action cannot go ahead."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from fastapi import HTTPException, status

NEEDS_PAYMENT = "needs_payment"
PURCHASE_ACTIONS: Tuple[str, ...] = ("purchase_credits", "upgrade_plan")


@dataclass
class FeatureGateError(Exception):
    """Gating failure carrying the JSON body returned to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_403_FORBIDDEN
    detail: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @classmethod
    def needs_payment(cls, message: str, **detail: Any) -> "FeatureGateError":
        """Usage is over the plan allowance and no prepaid credit is left."""

        return cls(
            code=NEEDS_PAYMENT,
            message=message,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"actions": list(PURCHASE_ACTIONS), **detail},
        )

    @property
    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self, headers: Optional[Dict[str, str]] = None) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.payload, headers=headers)
