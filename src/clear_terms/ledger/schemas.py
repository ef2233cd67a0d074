from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PurchaseRecord(BaseModel):
    amount: Decimal
    credits_granted: int
    balance_before: int
    balance_after: int
    payment_reference: str | None = None
    status: Literal["completed", "failed"] = "completed"
    purchased_at: datetime = Field(default_factory=_utcnow)


class AccountRecord(BaseModel):
    owner: str
    support_key: str
    balance: int = Field(ge=0)
    usage_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: datetime = Field(default_factory=_utcnow)
    purchase_history: list[PurchaseRecord] = Field(default_factory=list)


class PurchaseDescriptor(BaseModel):
    amount: Decimal
    payment_reference: str | None = None
    status: Literal["completed", "failed"] = "completed"


class LedgerStatus(str, enum.Enum):
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class LedgerOutcome:
    status: LedgerStatus
    balance: int | None = None
    credits_granted: int = 0

    @property
    def ok(self) -> bool:
        return self.status == LedgerStatus.OK

    def describe(self) -> str:
        if self.status == LedgerStatus.QUOTA_EXCEEDED:
            return "Quota exceeded: no credits remaining"
        if self.status == LedgerStatus.NOT_FOUND:
            return "Account not found"
        return "ok"
