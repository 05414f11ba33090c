from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Literal

SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_GAS_FEE_LAMPORTS = 5_000
DEFAULT_TIP_LAMPORTS = 10_000
MAX_BUNDLE_TRANSACTIONS = 5

LookupStatus = Literal["ok", "no_data", "transient_error", "permanent_error"]


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def compute_buy_amount(
    *,
    balance_lamports: int,
    percentage: Decimal | float | int,
    gas_fee_lamports: int,
    tip_lamports: int,
) -> int:
    """Lamports to swap on a buy; negative when fees exceed the share."""
    share = Decimal(balance_lamports) * Decimal(str(percentage)) / Decimal(100)
    return _floor(share) - gas_fee_lamports - tip_lamports


def compute_sell_amount(
    *,
    ui_amount: Decimal | float | int,
    decimals: int,
    percentage: Decimal | float | int,
) -> int:
    share = Decimal(str(ui_amount)) * Decimal(str(percentage)) / Decimal(100)
    return _floor(share * (Decimal(10) ** decimals))


@dataclass(slots=True, frozen=True)
class TokenInfo:
    price: Decimal
    source: str
    is_freezable: bool


@dataclass(slots=True, frozen=True)
class PriceLookup:
    status: LookupStatus
    token_info: TokenInfo | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and self.token_info is not None


@dataclass(slots=True, frozen=True)
class TokenBalance:
    amount: int
    decimals: int
    ui_amount: Decimal


@dataclass(slots=True, frozen=True)
class TradeResult:
    success: bool
    initial_price: Decimal | None = None
    bundle_id: str | None = None
    attempts: int = 0
    reason: str = ""

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class OpenPosition:
    token_address: str
    initial_price: Decimal | None
    bundle_id: str | None
    opened_at: str

    def to_mapping(self) -> dict[str, str]:
        return {
            "token_address": self.token_address,
            "initial_price": "" if self.initial_price is None else str(self.initial_price),
            "bundle_id": self.bundle_id or "",
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_mapping(cls, mapping: dict[str, str]) -> "OpenPosition":
        return cls(
            token_address=str(mapping.get("token_address") or ""),
            initial_price=to_decimal(mapping.get("initial_price")),
            bundle_id=str(mapping.get("bundle_id") or "") or None,
            opened_at=str(mapping.get("opened_at") or ""),
        )
