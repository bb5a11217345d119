"""
Scan validation for the stock-out scanner.

Pure checks run against a decoded label, the order's remaining demand and the
scans already accepted in the current session. Nothing here touches the camera,
the database or the session log; callers pass everything in.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


# Keys printed on the wallpaper labels, plus the spellings used by our own API.
DESIGN_KEYS = ("Design", "design")
LOT_KEYS = ("Lot", "lot", "lot_number")
UNIQUE_ID_KEYS = ("Unique Identifier", "uniqueIdentifier", "unique_identifier")


class ScanFormatError(ValueError):
    """Raised when a raw scan string is not a JSON label object."""


class ValidationReason(str, Enum):
    MALFORMED_FORMAT = "MalformedFormat"
    NOT_IN_ORDER = "NotInOrder"
    DUPLICATE = "Duplicate"
    QUANTITY_EXCEEDED = "QuantityExceeded"


@dataclass(frozen=True)
class ScanPayload:
    design: str
    lot: str
    unique_identifier: str

    def to_label_dict(self) -> Dict[str, str]:
        return {
            "Design": self.design,
            "Lot": self.lot,
            "Unique Identifier": self.unique_identifier,
        }


@dataclass(frozen=True)
class DemandLine:
    design: str
    lot: str
    ordered_quantity: int
    fulfilled_quantity: int = 0

    @property
    def remaining(self) -> int:
        return self.ordered_quantity - self.fulfilled_quantity


@dataclass(frozen=True)
class OrderDemandSnapshot:
    """Remaining demand of one order, frozen when the scan session starts."""
    lines: Tuple[DemandLine, ...]
    order_id: Optional[str] = None
    order_number: Optional[int] = None
    customer_name: str = ""

    def find_line(self, design: str, lot: str) -> Optional[DemandLine]:
        for line in self.lines:
            if line.design == design and line.lot == lot:
                return line
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "customerName": self.customer_name,
            "lines": [
                {
                    "design": line.design,
                    "lot": line.lot,
                    "orderedQuantity": line.ordered_quantity,
                    "fulfilledQuantity": line.fulfilled_quantity,
                }
                for line in self.lines
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderDemandSnapshot":
        lines = tuple(
            DemandLine(
                design=str(item["design"]),
                lot=str(item["lot"]),
                ordered_quantity=int(item["orderedQuantity"]),
                fulfilled_quantity=int(item.get("fulfilledQuantity") or 0),
            )
            for item in data.get("lines") or []
        )
        return cls(
            lines=lines,
            order_id=data.get("orderId"),
            order_number=data.get("orderNumber"),
            customer_name=data.get("customerName") or "",
        )


@dataclass(frozen=True)
class ScanEvent:
    design: str
    lot: str
    unique_identifier: str
    scanned_at: int  # epoch millis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "design": self.design,
            "lot": self.lot,
            "uniqueIdentifier": self.unique_identifier,
            "scannedAt": self.scanned_at,
        }


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[ValidationReason] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **details) -> "ValidationResult":
        return cls(valid=True, details=details)

    @classmethod
    def fail(cls, reason: ValidationReason, message: str, **details) -> "ValidationResult":
        return cls(valid=False, reason=reason, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            out["reason"] = self.reason.value
        if self.message:
            out["error"] = self.message
        out.update(self.details)
        return out


def _pick(data: dict, keys: Sequence[str]) -> str:
    for key in keys:
        if key in data and data[key] is not None:
            value = data[key]
            if isinstance(value, (dict, list)):
                return ""
            return str(value)
    return ""


def parse_scan_payload(raw: str) -> ScanPayload:
    """Decode a camera string into a payload.

    Only the JSON shape is checked here. Missing or blank fields still produce a
    payload so that validate() reports them as MalformedFormat.
    """
    if not isinstance(raw, str):
        raise ScanFormatError("Invalid QR code format")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, ValueError) as e:
        raise ScanFormatError("Invalid QR code format") from e
    if not isinstance(data, dict):
        raise ScanFormatError("Invalid QR code format")

    return ScanPayload(
        design=_pick(data, DESIGN_KEYS),
        lot=_pick(data, LOT_KEYS),
        unique_identifier=_pick(data, UNIQUE_ID_KEYS),
    )


def check_format(payload: ScanPayload) -> ValidationResult:
    fields = (payload.design, payload.lot, payload.unique_identifier)
    if not all(isinstance(v, str) and v.strip() for v in fields):
        return ValidationResult.fail(
            ValidationReason.MALFORMED_FORMAT,
            "Invalid QR code format. Missing required fields.",
        )
    return ValidationResult.ok()


def check_order_membership(payload: ScanPayload, snapshot: Optional[OrderDemandSnapshot]) -> ValidationResult:
    # Custom orders accept any design/lot
    if snapshot is None:
        return ValidationResult.ok()

    if snapshot.find_line(payload.design, payload.lot) is None:
        return ValidationResult.fail(
            ValidationReason.NOT_IN_ORDER,
            f"Item {payload.design} (Lot: {payload.lot}) is not in this order",
            design=payload.design,
            lot=payload.lot,
        )
    return ValidationResult.ok()


def check_duplicate(payload: ScanPayload, prior_events: Sequence[ScanEvent]) -> ValidationResult:
    """Reject a unique identifier already accepted in this session.

    Keyed on the identifier alone; design/lot are not compared.
    """
    if any(e.unique_identifier == payload.unique_identifier for e in prior_events):
        return ValidationResult.fail(
            ValidationReason.DUPLICATE,
            f"Item {payload.unique_identifier} has already been scanned",
            unique_identifier=payload.unique_identifier,
        )
    return ValidationResult.ok()


def check_quantity(
    payload: ScanPayload,
    snapshot: Optional[OrderDemandSnapshot],
    prior_events: Sequence[ScanEvent],
) -> ValidationResult:
    if snapshot is None:
        return ValidationResult.ok()

    line = snapshot.find_line(payload.design, payload.lot)
    if line is None:
        return ValidationResult.fail(
            ValidationReason.NOT_IN_ORDER,
            "Item not found in order",
            design=payload.design,
            lot=payload.lot,
        )

    current = sum(1 for e in prior_events if e.design == payload.design and e.lot == payload.lot)
    max_quantity = line.remaining
    if current >= max_quantity:
        return ValidationResult.fail(
            ValidationReason.QUANTITY_EXCEEDED,
            f"Quantity limit reached for {payload.design}. Max: {max_quantity}, Current: {current}",
            current=current,
            max=max_quantity,
        )
    return ValidationResult.ok(current=current, max=max_quantity)


def validate(
    payload: ScanPayload,
    snapshot: Optional[OrderDemandSnapshot],
    prior_events: Sequence[ScanEvent],
) -> ValidationResult:
    """Run every check in order and return the first failure.

    Order: format, order membership, duplicate, quantity.
    """
    result = check_format(payload)
    if not result.valid:
        return result

    result = check_order_membership(payload, snapshot)
    if not result.valid:
        return result

    result = check_duplicate(payload, prior_events)
    if not result.valid:
        return result

    return check_quantity(payload, snapshot, prior_events)
