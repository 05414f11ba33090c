from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Protocol, Sequence

import aiohttp

from sniper.common import RaceFailedError, first_success, log_event, poll_until

from .rpc import MalformedAccountError, RpcError, SolanaRpcClient
from .types import LookupStatus, PriceLookup, TokenInfo, to_decimal

DEFAULT_JUPITER_PRICE_API = "https://price.jup.ag/v6/price"
DEFAULT_DEXSCREENER_API = "https://api.dexscreener.com"


class PriceUnavailableError(RuntimeError):
    pass


class PriceProviderError(RuntimeError):
    def __init__(self, message: str, *, provider: str, status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class PriceProvider(Protocol):
    name: str

    async def quote_price(self, session: aiohttp.ClientSession, token_address: str) -> Decimal:
        ...


async def _get_json(
    session: aiohttp.ClientSession,
    url: str,
    *,
    provider: str,
    params: dict[str, str] | None = None,
) -> Any:
    async with session.get(url, params=params) as response:
        status = response.status
        raw_text = await response.text()

    if status >= 400:
        raise PriceProviderError(
            f"{provider} price request failed: status={status} body={raw_text[:240]!r}",
            provider=provider,
            status=status,
        )

    try:
        return json.loads(raw_text) if raw_text else {}
    except json.JSONDecodeError as error:
        raise PriceProviderError(
            f"{provider} returned a non-JSON body: {raw_text[:240]!r}",
            provider=provider,
            status=status,
        ) from error


def _positive_price(value: Any) -> Decimal | None:
    price = to_decimal(value)
    if price is None or price <= 0:
        return None
    return price


class JupiterPriceProvider:
    name = "jupiter"

    def __init__(self, *, api_url: str = DEFAULT_JUPITER_PRICE_API, vs_token: str = "SOL") -> None:
        self._api_url = api_url.rstrip("/")
        self._vs_token = vs_token

    async def quote_price(self, session: aiohttp.ClientSession, token_address: str) -> Decimal:
        data = await _get_json(
            session,
            self._api_url,
            provider=self.name,
            params={"ids": token_address, "vsToken": self._vs_token},
        )
        entries = data.get("data") if isinstance(data, dict) else None
        entry = entries.get(token_address) if isinstance(entries, dict) else None
        price = _positive_price(entry.get("price")) if isinstance(entry, dict) else None
        if price is None:
            raise PriceUnavailableError("Jupiter API failed to return a valid price.")
        return price


class DexScreenerPriceProvider:
    name = "dexscreener"

    def __init__(self, *, api_url: str = DEFAULT_DEXSCREENER_API, quote_symbol: str = "SOL") -> None:
        self._api_url = api_url.rstrip("/")
        self._quote_symbol = quote_symbol

    async def quote_price(self, session: aiohttp.ClientSession, token_address: str) -> Decimal:
        data = await _get_json(
            session,
            f"{self._api_url}/latest/dex/tokens/{token_address}",
            provider=self.name,
        )
        pairs = data.get("pairs") if isinstance(data, dict) else None
        for pair in pairs or []:
            if not isinstance(pair, dict):
                continue
            quote_token = pair.get("quoteToken") or {}
            if quote_token.get("symbol") != self._quote_symbol:
                continue
            price = _positive_price(pair.get("priceNative"))
            if price is not None:
                return price
        raise PriceUnavailableError("DexScreener API failed to return a valid price.")


PROVIDER_FACTORIES = {
    JupiterPriceProvider.name: JupiterPriceProvider,
    DexScreenerPriceProvider.name: DexScreenerPriceProvider,
}


def classify_error(error: BaseException) -> LookupStatus:
    if isinstance(error, RaceFailedError):
        statuses = [classify_error(child) for child in error.errors]
        if statuses and all(status == "no_data" for status in statuses):
            return "no_data"
        if "transient_error" in statuses or not statuses:
            return "transient_error"
        if "no_data" in statuses:
            return "no_data"
        return "permanent_error"
    if isinstance(error, PriceUnavailableError):
        return "no_data"
    if isinstance(error, MalformedAccountError):
        return "permanent_error"
    if isinstance(error, (PriceProviderError, RpcError)):
        status = error.status
        if status is not None and 400 <= status < 500 and status != 429:
            return "permanent_error"
        return "transient_error"
    if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError)):
        return "transient_error"
    if isinstance(error, ValueError):
        return "permanent_error"
    return "transient_error"


_STATUS_LOG_LEVEL = {
    "no_data": "warning",
    "transient_error": "warning",
    "permanent_error": "error",
}


class PriceOracle:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpcClient,
        providers: Sequence[PriceProvider],
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 1.5,
    ) -> None:
        if not providers:
            raise ValueError("At least one price provider is required.")
        self._logger = logger
        self._rpc = rpc
        self._providers = list(providers)
        self._timeout_seconds = timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self._providers]

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _quote(
        self,
        provider: PriceProvider,
        session: aiohttp.ClientSession,
        token_address: str,
    ) -> tuple[Decimal, str]:
        price = await provider.quote_price(session, token_address)
        return price, provider.name

    async def lookup_price(self, token_address: str) -> PriceLookup:
        if self._session is None:
            await self.connect()
        session = self._session
        if session is None:
            raise RuntimeError("Price HTTP session is not initialized.")

        try:
            price, source = await first_success(
                [
                    lambda provider=provider: self._quote(provider, session, token_address)
                    for provider in self._providers
                ]
            )
            freeze_authority = await self._rpc.fetch_freeze_authority(token_address)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            status = classify_error(error)
            log_event(
                self._logger,
                level=_STATUS_LOG_LEVEL[status],
                event="token_info_fetch_failed",
                message="Error fetching token info",
                token_address=token_address,
                status=status,
                error=str(error),
            )
            return PriceLookup(status=status, error=str(error))

        return PriceLookup(
            status="ok",
            token_info=TokenInfo(
                price=price,
                source=source,
                is_freezable=freeze_authority is not None,
            ),
        )

    async def fetch_price(self, token_address: str) -> TokenInfo | None:
        lookup = await self.lookup_price(token_address)
        return lookup.token_info if lookup.ok else None

    async def wait_for_price(
        self,
        token_address: str,
        *,
        stop_event: asyncio.Event | None = None,
        deadline_seconds: float | None = None,
    ) -> Decimal:
        def on_miss(_: TokenInfo | None, attempt: int) -> None:
            log_event(
                self._logger,
                level="warning",
                event="price_not_available",
                message=f"Price not available yet for {token_address}, retrying...",
                token_address=token_address,
                attempt=attempt,
            )

        token_info = await poll_until(
            lambda: self.fetch_price(token_address),
            lambda info: info is not None and info.price is not None,
            interval_seconds=self._poll_interval_seconds,
            deadline_seconds=deadline_seconds,
            stop_event=stop_event,
            on_miss=on_miss,
        )
        if token_info is None:
            raise RuntimeError("Price polling returned without token info.")
        log_event(
            self._logger,
            level="info",
            event="price_available",
            message=f"Price available for token {token_address}: {token_info.price} - fastest source {token_info.source}",
            token_address=token_address,
            price=str(token_info.price),
            source=token_info.source,
            is_freezable=token_info.is_freezable,
        )
        return token_info.price
