"""
Loyalty Ledger - Canonical Points Type & JSON Encoding
======================================================

RULE: No floats allowed for points.

Points: Decimal with two fractional digits
        - Stored as NUMERIC(12, 2) in DB
        - Parsed from the wire with parse_float=Decimal
        - Never negative

JSON rendering of Decimal is chosen per encoder instance: quoted string
(lossless default) or bare number (the accrual wire format).
"""

import json
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer, WithJsonSchema


POINTS_PLACES = Decimal("0.01")
ZERO_POINTS = Decimal("0.00")


# =============================================================================
# POINTS (Decimal)
# =============================================================================

def quantize_points(v: Decimal) -> Decimal:
    """Round to the two places the ledger stores."""
    return v.quantize(POINTS_PLACES, rounding=ROUND_HALF_UP)


def _validate_points(v: Any) -> Decimal:
    """
    Validate and convert to Decimal points.

    Accepts:
        - Decimal: Pass through
        - str: Parse as Decimal
        - int: Convert to Decimal
        - float: REJECTED (raises ValueError)
    """
    if isinstance(v, float):
        raise ValueError(
            "Float not allowed for points. Use Decimal or string. "
            f"Got: {v}"
        )

    if isinstance(v, bool):
        raise ValueError(f"Invalid points type: {type(v)}")

    if isinstance(v, Decimal):
        dec = v
    elif isinstance(v, (str, int)):
        try:
            dec = Decimal(str(v))
        except InvalidOperation:
            raise ValueError(f"Invalid points: {v}")
    else:
        raise ValueError(f"Invalid points type: {type(v)}")

    if not dec.is_finite():
        raise ValueError(f"Points must be finite, got: {v}")
    if dec < 0:
        raise ValueError(f"Points must be non-negative, got: {v}")
    return quantize_points(dec)


def _serialize_points(v: Decimal) -> str:
    """Serialize points as string (prevents JSON float issues)."""
    return str(v)


# Points type: Decimal, serialized as string by pydantic
Points = Annotated[
    Decimal,
    BeforeValidator(_validate_points),
    PlainSerializer(_serialize_points, when_used="json"),
    WithJsonSchema({"type": "string", "description": "Non-negative decimal points as string"}),
]


# =============================================================================
# JSON ENCODING
# =============================================================================

class LedgerJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for ledger payloads.

    decimal_as_number=False renders Decimal as a quoted string.
    decimal_as_number=True renders it as a bare JSON number, which is what the
    accrual system speaks. Points carry two places, so the float repr is exact.
    """

    def __init__(self, *args: Any, decimal_as_number: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.decimal_as_number = decimal_as_number

    def default(self, obj):
        if isinstance(obj, Decimal):
            if not self.decimal_as_number:
                return str(obj)
            if obj == obj.to_integral_value():
                return int(obj)
            return float(obj)
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def dumps(data: Any, *, decimal_as_number: bool = False) -> str:
    """Encode data with an explicitly chosen decimal rendering."""
    return json.dumps(
        data,
        cls=LedgerJSONEncoder,
        decimal_as_number=decimal_as_number,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def loads(raw: str | bytes) -> Any:
    """Decode JSON, keeping every fractional number as Decimal."""
    return json.loads(raw, parse_float=Decimal)
