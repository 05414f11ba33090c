from __future__ import annotations

import base64
import json
import logging
from typing import Any

import aiohttp
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from sniper.common import log_event

DEFAULT_JUPITER_QUOTE_API = "https://quote-api.jup.ag/v6/quote"
DEFAULT_JUPITER_SWAP_API = "https://quote-api.jup.ag/v6/swap"


class JupiterApiError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _parse_body(raw_text: str) -> Any:
    try:
        return json.loads(raw_text) if raw_text else {}
    except json.JSONDecodeError:
        return {"raw": raw_text}


def sign_swap_transaction(swap_transaction_base64: str, signer: Keypair) -> VersionedTransaction:
    """Deserialize Jupiter's unsigned swap transaction and sign it with ``signer``."""
    try:
        raw = base64.b64decode(swap_transaction_base64, validate=True)
        unsigned = VersionedTransaction.from_bytes(raw)
    except Exception as error:
        raise JupiterApiError(f"Swap transaction could not be decoded: {error}") from error

    signed = VersionedTransaction(unsigned.message, [signer])
    if not signed.signatures:
        raise JupiterApiError("Signed swap transaction has no signatures.")
    return signed


class JupiterSwapClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_api_url: str = DEFAULT_JUPITER_QUOTE_API,
        swap_api_url: str = DEFAULT_JUPITER_SWAP_API,
    ) -> None:
        self._logger = logger
        self._quote_api_url = quote_api_url.rstrip("/")
        self._swap_api_url = swap_api_url.rstrip("/")

    async def quote(
        self,
        *,
        session: aiohttp.ClientSession,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }

        async with session.get(self._quote_api_url, params=params) as response:
            status = response.status
            reason = response.reason
            raw_text = await response.text()

        if status >= 400:
            raise JupiterApiError(
                f"HTTP quote error! status: {reason or status} body={raw_text[:240]!r}",
                status=status,
            )

        data = _parse_body(raw_text)
        if not isinstance(data, dict) or "outAmount" not in data:
            raise JupiterApiError(f"Unexpected Jupiter quote response: {str(data)[:240]}", status=status)

        log_event(
            self._logger,
            level="info",
            event="jupiter_quote_received",
            message="Received Jupiter quote",
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=data.get("inAmount"),
            out_amount=data.get("outAmount"),
            price_impact_pct=data.get("priceImpactPct"),
        )
        return data

    async def build_swap_transaction(
        self,
        *,
        session: aiohttp.ClientSession,
        quote_response: dict[str, Any],
        user_public_key: str,
    ) -> str:
        payload = {
            "quoteResponse": quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
        }

        async with session.post(self._swap_api_url, json=payload) as response:
            status = response.status
            raw_text = await response.text()

        if status >= 400:
            raise JupiterApiError(f"HTTP error! status: {status} body={raw_text[:240]!r}", status=status)

        data = _parse_body(raw_text)
        swap_transaction = data.get("swapTransaction") if isinstance(data, dict) else None
        if not isinstance(swap_transaction, str) or not swap_transaction.strip():
            raise JupiterApiError(f"Jupiter swap response has no swapTransaction: {str(data)[:240]}", status=status)
        return swap_transaction.strip()
