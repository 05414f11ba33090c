from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from sniper.trading.jito import DEFAULT_JITO_BLOCK_ENGINE_URL
from sniper.trading.jupiter import DEFAULT_JUPITER_QUOTE_API, DEFAULT_JUPITER_SWAP_API
from sniper.trading.price import DEFAULT_DEXSCREENER_API, DEFAULT_JUPITER_PRICE_API, PROVIDER_FACTORIES
from sniper.trading.types import DEFAULT_GAS_FEE_LAMPORTS, DEFAULT_TIP_LAMPORTS, to_decimal, to_int

REQUIRED_ENV_VARS = ("PRIVATE_KEY", "API_KEY", "TOKEN_ADDRESS")
HELIUS_RPC_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={api_key}"


class ConfigurationError(RuntimeError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing environment variables: {', '.join(missing)}")
        self.missing = missing


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_optional_float(value: Any) -> float | None:
    if value is None or str(value).strip() == "":
        return None
    parsed = to_float(value, -1.0)
    return parsed if parsed > 0 else None


def parse_price_providers(value: str | None) -> tuple[str, ...]:
    names: list[str] = []
    for raw in (value or "").split(","):
        name = raw.strip().lower()
        if name in PROVIDER_FACTORIES and name not in names:
            names.append(name)
    return tuple(names) or ("jupiter",)


@dataclass(slots=True, frozen=True)
class AppSettings:
    private_key: str = field(repr=False)
    api_key: str = field(repr=False)
    token_address: str
    solana_rpc_url: str = field(repr=False)
    jupiter_quote_api: str = DEFAULT_JUPITER_QUOTE_API
    jupiter_swap_api: str = DEFAULT_JUPITER_SWAP_API
    jupiter_price_api: str = DEFAULT_JUPITER_PRICE_API
    dexscreener_api: str = DEFAULT_DEXSCREENER_API
    price_providers: tuple[str, ...] = ("jupiter",)
    jito_block_engine_url: str = DEFAULT_JITO_BLOCK_ENGINE_URL
    buy_percentage: Decimal = Decimal("6")
    sell_trigger_multiple: Decimal = Decimal("1.2")
    slippage_bps: int = 500
    max_retries: int = 3
    gas_fee_lamports: int = DEFAULT_GAS_FEE_LAMPORTS
    tip_lamports: int = DEFAULT_TIP_LAMPORTS
    price_poll_interval_seconds: float = 1.5
    monitor_poll_interval_seconds: float = 2.0
    monitor_timeout_seconds: float | None = None
    settle_delay_seconds: float = 30.0
    recovery_delay_seconds: float = 10.0
    http_timeout_seconds: float = 10.0
    redis_url: str = ""
    redis_position_key: str = "sniper:position"
    redis_position_ttl_seconds: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppSettings":
        env = os.environ if environ is None else environ
        api_key = env.get("API_KEY", "").strip()
        rpc_override = env.get("SOLANA_RPC_URL", "").strip()

        buy_percentage = to_decimal(env.get("BUY_PERCENTAGE"), Decimal("6"))
        if buy_percentage is None or not (Decimal(0) < buy_percentage <= Decimal(100)):
            buy_percentage = Decimal("6")
        sell_trigger_multiple = to_decimal(env.get("SELL_TRIGGER_MULTIPLE"), Decimal("1.2"))
        if sell_trigger_multiple is None or sell_trigger_multiple <= 0:
            sell_trigger_multiple = Decimal("1.2")

        return cls(
            private_key=env.get("PRIVATE_KEY", "").strip(),
            api_key=api_key,
            token_address=env.get("TOKEN_ADDRESS", "").strip(),
            solana_rpc_url=rpc_override or (HELIUS_RPC_TEMPLATE.format(api_key=api_key) if api_key else ""),
            jupiter_quote_api=env.get("JUPITER_QUOTE_API", DEFAULT_JUPITER_QUOTE_API).strip(),
            jupiter_swap_api=env.get("JUPITER_SWAP_API", DEFAULT_JUPITER_SWAP_API).strip(),
            jupiter_price_api=env.get("JUPITER_PRICE_API", DEFAULT_JUPITER_PRICE_API).strip(),
            dexscreener_api=env.get("DEXSCREENER_API", DEFAULT_DEXSCREENER_API).strip(),
            price_providers=parse_price_providers(env.get("PRICE_PROVIDERS")),
            jito_block_engine_url=env.get("JITO_BLOCK_ENGINE_URL", DEFAULT_JITO_BLOCK_ENGINE_URL).strip(),
            buy_percentage=buy_percentage,
            sell_trigger_multiple=sell_trigger_multiple,
            slippage_bps=max(1, to_int(env.get("SLIPPAGE_BPS"), 500)),
            max_retries=max(1, to_int(env.get("MAX_RETRIES"), 3)),
            gas_fee_lamports=max(0, to_int(env.get("GAS_FEE_LAMPORTS"), DEFAULT_GAS_FEE_LAMPORTS)),
            tip_lamports=max(1, to_int(env.get("JITO_TIP_LAMPORTS"), DEFAULT_TIP_LAMPORTS)),
            price_poll_interval_seconds=max(0.1, to_float(env.get("PRICE_POLL_INTERVAL_SECONDS"), 1.5)),
            monitor_poll_interval_seconds=max(0.1, to_float(env.get("MONITOR_POLL_INTERVAL_SECONDS"), 2.0)),
            monitor_timeout_seconds=to_optional_float(env.get("MONITOR_TIMEOUT_SECONDS")),
            settle_delay_seconds=max(0.0, to_float(env.get("SETTLE_DELAY_SECONDS"), 30.0)),
            recovery_delay_seconds=max(0.0, to_float(env.get("RECOVERY_DELAY_SECONDS"), 10.0)),
            http_timeout_seconds=max(1.0, to_float(env.get("HTTP_TIMEOUT_SECONDS"), 10.0)),
            redis_url=env.get("REDIS_URL", "").strip(),
            redis_position_key=env.get("REDIS_POSITION_KEY", "sniper:position").strip() or "sniper:position",
            redis_position_ttl_seconds=max(0, to_int(env.get("REDIS_POSITION_TTL_SECONDS"), 0)),
        )

    def missing_required(self) -> list[str]:
        values = {
            "PRIVATE_KEY": self.private_key,
            "API_KEY": self.api_key,
            "TOKEN_ADDRESS": self.token_address,
        }
        return [name for name in REQUIRED_ENV_VARS if not values[name]]

    def validate(self) -> None:
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(missing)
