from __future__ import annotations

import contextlib
import json
import logging
from typing import Any

import aiohttp
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from sniper.common import log_event

from .types import TokenBalance, to_decimal, to_int


class RpcError(RuntimeError):
    def __init__(self, message: str, *, method: str, status: int | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.status = status


class MalformedAccountError(RpcError):
    pass


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


class SolanaRpcClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        timeout_seconds: float = 10.0,
        commitment: str = "confirmed",
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._timeout_seconds = timeout_seconds
        self._commitment = commitment
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL could not be resolved; set API_KEY.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.fetch_latest_blockhash()

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._session.post(self._rpc_url, json=payload) as response:
            status = response.status
            reason = response.reason or ""
            raw_text = await response.text()

        if status >= 400:
            raise RpcError(
                f"RPC call failed: method={method} status={status} {reason} body={raw_text[:240]!r}",
                method=method,
                status=status,
            )

        try:
            body = json.loads(raw_text) if raw_text else None
        except json.JSONDecodeError as error:
            raise RpcError(f"RPC returned a non-JSON body for {method}: {raw_text[:240]!r}", method=method) from error

        if not isinstance(body, dict):
            raise RpcError(f"Invalid RPC response for {method}: {body}", method=method)

        if body.get("error"):
            raise RpcError(f"RPC error for {method}: {body['error']}", method=method)

        return body.get("result")

    @staticmethod
    def _value(result: Any, *, method: str) -> Any:
        if not isinstance(result, dict) or "value" not in result:
            raise RpcError(f"Unexpected {method} response: {result}", method=method)
        return result["value"]

    async def fetch_balance(self, owner: Pubkey) -> int:
        result = await self._rpc_call("getBalance", [str(owner), {"commitment": self._commitment}])
        value = self._value(result, method="getBalance")
        if isinstance(value, bool) or not isinstance(value, int):
            raise RpcError(f"Unexpected getBalance value: {value}", method="getBalance")
        return value

    async def fetch_token_balance(self, *, owner: Pubkey, mint: str) -> TokenBalance:
        token_account = get_associated_token_address(owner, Pubkey.from_string(mint))
        result = await self._rpc_call(
            "getTokenAccountBalance",
            [str(token_account), {"commitment": self._commitment}],
        )
        value = self._value(result, method="getTokenAccountBalance")
        if not isinstance(value, dict):
            raise RpcError(f"Unexpected getTokenAccountBalance value: {value}", method="getTokenAccountBalance")

        ui_amount = to_decimal(value.get("uiAmountString"), to_decimal(value.get("uiAmount")))
        if ui_amount is None:
            raise RpcError(
                f"Token account {token_account} has no uiAmount: {value}",
                method="getTokenAccountBalance",
            )
        return TokenBalance(
            amount=to_int(value.get("amount"), 0),
            decimals=to_int(value.get("decimals"), 0),
            ui_amount=ui_amount,
        )

    async def fetch_latest_blockhash(self) -> str:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": self._commitment}])
        value = self._value(result, method="getLatestBlockhash")
        if not isinstance(value, dict):
            raise RpcError(f"Unexpected getLatestBlockhash payload: {result}", method="getLatestBlockhash")

        blockhash = value.get("blockhash")
        if not isinstance(blockhash, str) or not blockhash:
            raise RpcError(f"Missing blockhash in RPC response: {result}", method="getLatestBlockhash")
        return blockhash

    async def fetch_freeze_authority(self, mint: str) -> str | None:
        """Return the mint's freeze authority, or None when it has none."""
        result = await self._rpc_call(
            "getAccountInfo",
            [mint, {"encoding": "jsonParsed", "commitment": self._commitment}],
        )
        value = self._value(result, method="getAccountInfo")
        try:
            info = value["data"]["parsed"]["info"]
        except (KeyError, TypeError) as error:
            raise MalformedAccountError(
                f"Mint account {mint} is missing parsed data",
                method="getAccountInfo",
            ) from error
        if not isinstance(info, dict) or "freezeAuthority" not in info:
            raise MalformedAccountError(
                f"Mint account {mint} has no freezeAuthority field",
                method="getAccountInfo",
            )

        freeze_authority = info.get("freezeAuthority")
        log_event(
            self._logger,
            level="debug",
            event="mint_account_loaded",
            message="Loaded mint account",
            mint=mint,
            freeze_authority=freeze_authority,
        )
        return str(freeze_authority) if freeze_authority is not None else None
