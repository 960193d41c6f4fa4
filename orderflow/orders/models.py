from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def decimal_to_wire(value: Optional[Decimal]) -> Optional[float]:
    # JSON consumers get plain numbers; Decimal stays the internal type.
    return None if value is None else float(value)


class OrderStatus(str, Enum):
    PENDING = "pending"
    ROUTING = "routing"
    BUILDING = "building"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class Order:
    order_id: str
    from_token: str
    to_token: str
    amount: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    selected_venue: Optional[str] = None
    output_amount: Optional[Decimal] = None
    settlement_reference: Optional[str] = None

    def merged(self, *, status: OrderStatus, updated_at: datetime, **fields: Any) -> "Order":
        """
        Copy with `status` applied and the given fields merged in.

        The stage fields are write-once: a field that already holds a value
        keeps it, and None never clears one.
        """
        changes = {k: v for k, v in fields.items() if v is not None and getattr(self, k) is None}
        return replace(self, status=status, updated_at=updated_at, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "amount": decimal_to_wire(self.amount),
            "status": self.status.value,
            "selectedVenue": self.selected_venue,
            "outputAmount": decimal_to_wire(self.output_amount),
            "settlementReference": self.settlement_reference,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Quote:
    venue: str
    output_amount: Decimal
    price: Decimal
    fee: Decimal


@dataclass(frozen=True)
class JobPayload:
    """Everything a worker needs to execute an order without re-reading the store."""

    order_id: str
    from_token: str
    to_token: str
    amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "fromToken": self.from_token,
            "toToken": self.to_token,
            # String keeps full precision through JSON / jsonb.
            "amount": str(self.amount),
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "JobPayload":
        return JobPayload(
            order_id=str(data["orderId"]),
            from_token=str(data["fromToken"]),
            to_token=str(data["toToken"]),
            amount=Decimal(str(data["amount"])),
        )


@dataclass(frozen=True)
class ProgressEvent:
    order_id: str
    status: OrderStatus
    progress: int
    message: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    # Process-local dispatch stamp, set by the bus; never on the wire.
    sequence: Optional[int] = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "orderId": self.order_id,
            "status": self.status.value,
            "progress": int(self.progress),
        }
        if self.message is not None:
            out["message"] = self.message
        if self.data:
            out["data"] = {
                k: (decimal_to_wire(v) if isinstance(v, Decimal) else v) for k, v in self.data.items()
            }
        return out

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ProgressEvent":
        order_id = str(data.get("orderId") or "").strip()
        if not order_id:
            raise ValueError("Missing required field: orderId")
        return ProgressEvent(
            order_id=order_id,
            status=OrderStatus(str(data.get("status"))),
            progress=int(data.get("progress") or 0),
            message=data.get("message"),
            data=dict(data.get("data") or {}),
        )
