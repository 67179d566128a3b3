from __future__ import annotations

import asyncio
import logging
import random
import time
from decimal import Decimal
from typing import Any, Callable, TypeVar

from web3 import Web3
from web3.exceptions import TimeExhausted

from concierge.common import ChainRpcError, log_event

from .abis import AAVE_POOL_ABI, ERC20_ABI, ERC4626_ABI, GMX_EXCHANGE_ROUTER_ABI
from .chain import NATIVE_TOKEN, ConfirmationResult, ProtocolAction, ReserveState
from .config import GMX_ORDER_TYPE_MARKET_INCREASE, GMX_USD_DECIMALS, NATIVE_DECIMALS, ChainConfig

T = TypeVar("T")

MAX_UINT256 = 2**256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_BYTES32 = b"\x00" * 32
NATIVE_TRANSFER_GAS = 21_000
GAS_ESTIMATE_MULTIPLIER = 1.2

# Aave v3 ReserveConfiguration bit layout
RESERVE_ACTIVE_BIT = 56
RESERVE_FROZEN_BIT = 57
RESERVE_PAUSED_BIT = 60
SUPPLY_CAP_START_BIT = 116
SUPPLY_CAP_MASK = (1 << 36) - 1


def to_base_units(amount: float, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(amount: int, decimals: int) -> float:
    return float(Decimal(int(amount)) / (Decimal(10) ** decimals))


def decode_reserve_configuration(data: int) -> tuple[bool, bool, bool, int]:
    is_active = bool((data >> RESERVE_ACTIVE_BIT) & 1)
    is_frozen = bool((data >> RESERVE_FROZEN_BIT) & 1)
    is_paused = bool((data >> RESERVE_PAUSED_BIT) & 1)
    supply_cap = (data >> SUPPLY_CAP_START_BIT) & SUPPLY_CAP_MASK
    return is_active, is_frozen, is_paused, supply_cap


class Web3ChainClient:
    def __init__(
        self,
        *,
        rpc_url: str,
        private_key: str,
        chain: ChainConfig,
        logger: logging.Logger,
        read_timeout_seconds: float = 10.0,
        read_max_attempts: int = 3,
        approval_timeout_seconds: float = 90.0,
    ) -> None:
        if not private_key:
            raise ValueError("HUB_WALLET_PRIVATE_KEY is required for live execution.")
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._chain = chain
        self._logger = logger
        self._read_timeout_seconds = read_timeout_seconds
        self._read_max_attempts = max(1, read_max_attempts)
        self._approval_timeout_seconds = approval_timeout_seconds
        self._w3: Web3 | None = None
        self._hub_address = ""
        self._decimals: dict[str, int] = {
            chain.usdc_address.lower(): chain.usdc_decimals,
            chain.ergc_address.lower(): chain.ergc_decimals,
        }

    @property
    def hub_address(self) -> str:
        return self._hub_address

    def _require_w3(self) -> Web3:
        if self._w3 is None:
            raise RuntimeError("Chain client is not connected.")
        return self._w3

    async def connect(self) -> None:
        w3 = Web3(Web3.HTTPProvider(self._rpc_url, request_kwargs={"timeout": 60}))
        account = w3.eth.account.from_key(self._private_key)
        self._w3 = w3
        self._hub_address = account.address
        await self.healthcheck()
        log_event(
            self._logger,
            level="info",
            event="chain_client_connected",
            message="Connected to chain RPC",
            chain_id=self._chain.chain_id,
            hub_address=self._hub_address,
        )

    async def close(self) -> None:
        self._w3 = None

    async def healthcheck(self) -> None:
        w3 = self._require_w3()
        chain_id = await self._read(lambda: w3.eth.chain_id, method="eth_chainId")
        if int(chain_id) != self._chain.chain_id:
            raise ChainRpcError(
                f"RPC chain id {chain_id} does not match configured chain {self._chain.chain_id}",
                method="eth_chainId",
            )

    async def _read(self, call: Callable[[], T], *, method: str) -> T:
        last_error: Exception | None = None
        for attempt in range(1, self._read_max_attempts + 1):
            try:
                return await asyncio.wait_for(asyncio.to_thread(call), timeout=self._read_timeout_seconds)
            except asyncio.TimeoutError as error:
                last_error = error
            except Exception as error:
                last_error = error

            if attempt < self._read_max_attempts:
                delay = min(5.0, 0.5 * 2 ** (attempt - 1)) + random.uniform(0.0, 0.25)
                log_event(
                    self._logger,
                    level="warning",
                    event="chain_read_retry",
                    message="Chain read failed; retrying",
                    method=method,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    error=str(last_error) or type(last_error).__name__,
                )
                await asyncio.sleep(delay)

        raise ChainRpcError(
            f"network error: {method} failed after {self._read_max_attempts} attempts: "
            f"{str(last_error) or type(last_error).__name__}",
            method=method,
        )

    def _checksum(self, address: str) -> str:
        return Web3.to_checksum_address(address)

    def _erc20(self, token: str) -> Any:
        return self._require_w3().eth.contract(address=self._checksum(token), abi=ERC20_ABI)

    async def _token_decimals(self, token: str) -> int:
        cached = self._decimals.get(token.lower())
        if cached is not None:
            return cached
        contract = self._erc20(token)
        decimals = int(await self._read(lambda: contract.functions.decimals().call(), method="decimals"))
        self._decimals[token.lower()] = decimals
        return decimals

    async def get_balance(self, address: str, token: str) -> float:
        w3 = self._require_w3()
        owner = self._checksum(address)
        if token == NATIVE_TOKEN:
            raw = await self._read(lambda: w3.eth.get_balance(owner), method="eth_getBalance")
            return from_base_units(raw, NATIVE_DECIMALS)
        contract = self._erc20(token)
        decimals = await self._token_decimals(token)
        raw = await self._read(lambda: contract.functions.balanceOf(owner).call(), method="balanceOf")
        return from_base_units(raw, decimals)

    def _sign_and_send(self, build: Callable[[dict[str, Any]], dict[str, Any]], *, gas_price_ceiling_wei: int) -> str:
        w3 = self._require_w3()
        gas_price = int(w3.eth.gas_price)
        if gas_price > gas_price_ceiling_wei:
            raise ChainRpcError(
                f"network congestion: gas price {gas_price} wei above ceiling {gas_price_ceiling_wei} wei",
                method="eth_gasPrice",
            )
        base_tx = {
            "from": self._hub_address,
            "nonce": w3.eth.get_transaction_count(self._hub_address, "pending"),
            "chainId": self._chain.chain_id,
            "gasPrice": gas_price,
        }
        tx = build(base_tx)
        if "gas" not in tx:
            tx["gas"] = int(w3.eth.estimate_gas(tx) * GAS_ESTIMATE_MULTIPLIER)
        signed = w3.eth.account.sign_transaction(tx, self._private_key)
        tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def _submit(
        self,
        build: Callable[[dict[str, Any]], dict[str, Any]],
        *,
        gas_price_ceiling_wei: int,
        method: str,
    ) -> str:
        # submissions are never retried here; an ambiguous send needs reconciliation
        try:
            tx_hash = await asyncio.to_thread(self._sign_and_send, build, gas_price_ceiling_wei=gas_price_ceiling_wei)
        except ChainRpcError:
            raise
        except Exception as error:
            raise ChainRpcError(str(error) or type(error).__name__, method=method) from error
        log_event(
            self._logger,
            level="info",
            event="chain_tx_submitted",
            message="Transaction submitted",
            method=method,
            tx_hash=tx_hash,
        )
        return tx_hash

    async def ensure_allowance(
        self,
        token: str,
        spender: str,
        amount: float,
        *,
        gas_price_ceiling_wei: int,
    ) -> str | None:
        contract = self._erc20(token)
        decimals = await self._token_decimals(token)
        required = to_base_units(amount, decimals)
        owner = self._checksum(self._hub_address)
        spender_address = self._checksum(spender)
        current = await self._read(
            lambda: contract.functions.allowance(owner, spender_address).call(),
            method="allowance",
        )
        if int(current) >= required:
            return None

        tx_hash = await self._submit(
            lambda base: contract.functions.approve(spender_address, MAX_UINT256).build_transaction(base),
            gas_price_ceiling_wei=gas_price_ceiling_wei,
            method="approve",
        )
        result = await self.await_confirmation(tx_hash, timeout_seconds=self._approval_timeout_seconds)
        if result.status != "success":
            raise ChainRpcError(f"approval {result.status}: {tx_hash}", method="approve")
        return tx_hash

    async def submit_protocol_action(self, action: ProtocolAction, *, gas_price_ceiling_wei: int) -> str:
        build = await self._builder_for(action)
        return await self._submit(build, gas_price_ceiling_wei=gas_price_ceiling_wei, method=action.kind)

    async def _builder_for(self, action: ProtocolAction) -> Callable[[dict[str, Any]], dict[str, Any]]:
        w3 = self._require_w3()
        params = action.params
        chain = self._chain

        if action.kind == "native_transfer":
            to_address = self._checksum(params["to"])
            value = to_base_units(params["amount"], NATIVE_DECIMALS)
            return lambda base: {**base, "to": to_address, "value": value, "gas": NATIVE_TRANSFER_GAS}

        if action.kind == "erc20_transfer":
            contract = self._erc20(params["token"])
            units = to_base_units(params["amount"], await self._token_decimals(params["token"]))
            to_address = self._checksum(params["to"])
            return lambda base: contract.functions.transfer(to_address, units).build_transaction(base)

        if action.kind == "erc20_transfer_from":
            contract = self._erc20(params["token"])
            units = to_base_units(params["amount"], await self._token_decimals(params["token"]))
            from_address = self._checksum(params["from"])
            to_address = self._checksum(params["to"])
            return lambda base: contract.functions.transferFrom(from_address, to_address, units).build_transaction(
                base
            )

        if action.kind == "aave_supply":
            pool = w3.eth.contract(address=self._checksum(chain.aave_pool_address), abi=AAVE_POOL_ABI)
            asset = self._checksum(params.get("asset") or chain.usdc_address)
            units = to_base_units(params["amount"], await self._token_decimals(asset))
            on_behalf_of = self._checksum(params["on_behalf_of"])
            return lambda base: pool.functions.supply(asset, units, on_behalf_of, 0).build_transaction(base)

        if action.kind == "vault_deposit":
            vault = w3.eth.contract(address=self._checksum(params["vault"]), abi=ERC4626_ABI)
            units = to_base_units(params["amount"], chain.usdc_decimals)
            receiver = self._checksum(params["receiver"])
            return lambda base: vault.functions.deposit(units, receiver).build_transaction(base)

        if action.kind == "gmx_open_long":
            return self._gmx_open_long_builder(params)

        raise ValueError(f"Unsupported protocol action: {action.kind}")

    def _gmx_open_long_builder(self, params: dict[str, Any]) -> Callable[[dict[str, Any]], dict[str, Any]]:
        w3 = self._require_w3()
        chain = self._chain
        router = w3.eth.contract(address=self._checksum(chain.gmx_exchange_router_address), abi=GMX_EXCHANGE_ROUTER_ABI)
        order_vault = self._checksum(chain.gmx_order_vault_address)
        usdc = self._checksum(chain.usdc_address)
        receiver = self._checksum(params["receiver"])
        collateral_units = to_base_units(params["collateral_amount"], chain.usdc_decimals)
        size_delta_usd = to_base_units(params["size_usd"], GMX_USD_DECIMALS)
        execution_fee = to_base_units(params["execution_fee"], NATIVE_DECIMALS)

        order_params = (
            (
                receiver,
                receiver,
                ZERO_ADDRESS,
                ZERO_ADDRESS,
                self._checksum(params.get("market") or chain.gmx_btc_market_address),
                usdc,
                [],
            ),
            (size_delta_usd, collateral_units, 0, MAX_UINT256, execution_fee, 0, 0),
            GMX_ORDER_TYPE_MARKET_INCREASE,
            0,
            True,
            False,
            False,
            ZERO_BYTES32,
        )
        calls = [
            router.encode_abi("sendWnt", args=[order_vault, execution_fee]),
            router.encode_abi("sendTokens", args=[usdc, order_vault, collateral_units]),
            router.encode_abi("createOrder", args=[order_params]),
        ]
        return lambda base: router.functions.multicall(calls).build_transaction({**base, "value": execution_fee})

    async def await_confirmation(
        self,
        tx_hash: str,
        *,
        timeout_seconds: float,
        confirmations: int = 1,
    ) -> ConfirmationResult:
        w3 = self._require_w3()
        deadline = time.monotonic() + timeout_seconds
        try:
            receipt = await asyncio.to_thread(
                w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=timeout_seconds,
                poll_latency=2,
            )
        except TimeExhausted:
            return ConfirmationResult(status="timeout", tx_hash=tx_hash)
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="chain_receipt_error",
                message="Receipt lookup failed; outcome unknown",
                tx_hash=tx_hash,
                error=str(error),
            )
            return ConfirmationResult(status="timeout", tx_hash=tx_hash, error=str(error))

        block_number = int(receipt["blockNumber"])
        if int(receipt["status"]) != 1:
            return ConfirmationResult(
                status="failed",
                tx_hash=tx_hash,
                block_number=block_number,
                error="transaction reverted",
            )

        while confirmations > 1:
            latest = await self._read(lambda: w3.eth.block_number, method="eth_blockNumber")
            if int(latest) - block_number + 1 >= confirmations:
                break
            if time.monotonic() >= deadline:
                return ConfirmationResult(status="timeout", tx_hash=tx_hash, block_number=block_number)
            await asyncio.sleep(2)

        return ConfirmationResult(status="success", tx_hash=tx_hash, block_number=block_number)

    async def get_reserve_state(self, asset: str) -> ReserveState:
        w3 = self._require_w3()
        pool = w3.eth.contract(address=self._checksum(self._chain.aave_pool_address), abi=AAVE_POOL_ABI)
        asset_address = self._checksum(asset)
        reserve = await self._read(
            lambda: pool.functions.getReserveData(asset_address).call(),
            method="getReserveData",
        )
        configuration = int(reserve[0][0])
        is_active, is_frozen, is_paused, supply_cap = decode_reserve_configuration(configuration)
        a_token = self._erc20(reserve[8])
        decimals = await self._token_decimals(asset)
        total_supply = await self._read(lambda: a_token.functions.totalSupply().call(), method="totalSupply")
        return ReserveState(
            is_active=is_active,
            is_frozen=is_frozen,
            is_paused=is_paused,
            supply_cap=supply_cap,
            total_supplied=from_base_units(total_supply, decimals),
        )

    async def read_position_amount(self, position: dict[str, Any]) -> float | None:
        w3 = self._require_w3()
        wallet = self._checksum(position["wallet_address"])
        strategy = position.get("strategy_type")

        if strategy == "conservative":
            pool = w3.eth.contract(address=self._checksum(self._chain.aave_pool_address), abi=AAVE_POOL_ABI)
            usdc = self._checksum(self._chain.usdc_address)
            reserve = await self._read(lambda: pool.functions.getReserveData(usdc).call(), method="getReserveData")
            return await self.get_balance(wallet, reserve[8])

        if strategy == "split":
            total = 0.0
            for vault_address in (self._chain.vault_a_address, self._chain.vault_b_address):
                if not vault_address:
                    continue
                vault = w3.eth.contract(address=self._checksum(vault_address), abi=ERC4626_ABI)
                shares = await self._read(lambda: vault.functions.balanceOf(wallet).call(), method="balanceOf")
                assets = await self._read(
                    lambda: vault.functions.convertToAssets(shares).call(),
                    method="convertToAssets",
                )
                total += from_base_units(assets, self._chain.usdc_decimals)
            return total

        # GMX positions are keyed by the exchange, not readable as a wallet balance
        return None
