from __future__ import annotations

import os
from dataclasses import dataclass

from concierge.common.conversions import to_float, to_int

USDC_DECIMALS = 6
NATIVE_DECIMALS = 18
GMX_USD_DECIMALS = 30
GMX_ORDER_TYPE_MARKET_INCREASE = 2


@dataclass(slots=True, frozen=True)
class ChainConfig:
    chain_id: int
    usdc_address: str
    aave_pool_address: str
    gmx_router_address: str
    gmx_exchange_router_address: str
    gmx_order_vault_address: str
    gmx_btc_market_address: str
    wavax_address: str
    ergc_address: str
    ergc_treasury_address: str
    vault_a_address: str
    vault_b_address: str
    usdc_decimals: int
    ergc_decimals: int
    gas_topup_avax_conservative: float
    gas_topup_avax_aggressive: float
    gas_topup_avax_split: float
    gmx_execution_fee_avax: float
    gmx_leverage: float
    aave_min_supply_usd: float
    gmx_min_collateral_usd: float
    gmx_min_position_usd: float
    ergc_qualifying_balance: float
    ergc_debit_amount: float
    ergc_delivery_amount: float
    split_vault_a_pct: float
    split_vault_b_pct: float
    default_gas_price_gwei: float
    confirmation_blocks: int
    large_amount_confirmation_blocks: int
    large_amount_threshold_usd: float
    supply_cap_buffer_pct: float

    @classmethod
    def from_env(cls) -> "ChainConfig":
        vault_a_pct = min(100.0, max(0.0, to_float(os.getenv("SPLIT_VAULT_A_PCT"), 50.0)))
        return cls(
            chain_id=to_int(os.getenv("CHAIN_ID"), 43114),
            usdc_address=os.getenv("USDC_ADDRESS", "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E"),
            aave_pool_address=os.getenv("AAVE_POOL_ADDRESS", "0x794a61358D6845594F94dc1DB02A252b5b4814aD"),
            gmx_router_address=os.getenv("GMX_ROUTER_ADDRESS", "0x820F5FfC5b525cD4d88Cd91aCf2c28F16530Cc68"),
            gmx_exchange_router_address=os.getenv(
                "GMX_EXCHANGE_ROUTER_ADDRESS",
                "0x8f550E53DFe96C055D5Bdb267c21F268fCAF63B2",
            ),
            gmx_order_vault_address=os.getenv(
                "GMX_ORDER_VAULT_ADDRESS",
                "0xD3D60D22d415aD43b7e64b510D86A30f19B1B12C",
            ),
            gmx_btc_market_address=os.getenv(
                "GMX_BTC_MARKET_ADDRESS",
                "0xFb02132333A79C8B5Bd0b64E3AbccA5f7fAf2937",
            ),
            wavax_address=os.getenv("WAVAX_ADDRESS", "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7"),
            ergc_address=os.getenv("ERGC_ADDRESS", "0xDC353b94284E7d3aEAB2588CEA3082b9b87C184B"),
            ergc_treasury_address=os.getenv("ERGC_TREASURY_ADDRESS", "").strip(),
            vault_a_address=os.getenv("MORPHO_VAULT_A_ADDRESS", "").strip(),
            vault_b_address=os.getenv("MORPHO_VAULT_B_ADDRESS", "").strip(),
            usdc_decimals=USDC_DECIMALS,
            ergc_decimals=NATIVE_DECIMALS,
            gas_topup_avax_conservative=max(0.0, to_float(os.getenv("AAVE_AVAX_TOPUP"), 0.005)),
            gas_topup_avax_aggressive=max(0.0, to_float(os.getenv("GMX_AVAX_TOPUP"), 0.06)),
            gas_topup_avax_split=max(0.0, to_float(os.getenv("SPLIT_AVAX_TOPUP"), 0.005)),
            gmx_execution_fee_avax=max(0.0, to_float(os.getenv("GMX_EXECUTION_FEE_AVAX"), 0.02)),
            gmx_leverage=max(1.0, to_float(os.getenv("GMX_LEVERAGE"), 2.5)),
            aave_min_supply_usd=max(0.0, to_float(os.getenv("AAVE_MIN_SUPPLY_USD"), 0.5)),
            gmx_min_collateral_usd=max(0.0, to_float(os.getenv("GMX_MIN_COLLATERAL_USD"), 5.0)),
            gmx_min_position_usd=max(0.0, to_float(os.getenv("GMX_MIN_POSITION_USD"), 10.0)),
            ergc_qualifying_balance=max(0.0, to_float(os.getenv("ERGC_QUALIFYING_BALANCE"), 100.0)),
            ergc_debit_amount=max(0.0, to_float(os.getenv("ERGC_DEBIT_AMOUNT"), 1.0)),
            ergc_delivery_amount=max(0.0, to_float(os.getenv("ERGC_DELIVERY_AMOUNT"), 99.0)),
            split_vault_a_pct=vault_a_pct,
            split_vault_b_pct=100.0 - vault_a_pct,
            default_gas_price_gwei=max(1.0, to_float(os.getenv("DEFAULT_GAS_PRICE_GWEI"), 30.0)),
            confirmation_blocks=max(1, to_int(os.getenv("CONFIRMATION_BLOCKS"), 1)),
            large_amount_confirmation_blocks=max(1, to_int(os.getenv("LARGE_AMOUNT_CONFIRMATION_BLOCKS"), 6)),
            large_amount_threshold_usd=max(0.0, to_float(os.getenv("LARGE_AMOUNT_THRESHOLD_USD"), 100.0)),
            supply_cap_buffer_pct=max(0.0, to_float(os.getenv("SUPPLY_CAP_BUFFER_PCT"), 1.0)),
        )

    def gas_topup_avax(self, strategy_type: str) -> float:
        if strategy_type == "aggressive":
            return self.gas_topup_avax_aggressive
        if strategy_type == "split":
            return self.gas_topup_avax_split
        return self.gas_topup_avax_conservative

    def confirmations_for(self, amount_usd: float) -> int:
        if amount_usd > self.large_amount_threshold_usd:
            return self.large_amount_confirmation_blocks
        return self.confirmation_blocks

    def gas_price_ceiling_wei(self, max_gas_price_gwei: float) -> int:
        gwei = max_gas_price_gwei if max_gas_price_gwei > 0 else self.default_gas_price_gwei
        return int(gwei * 10**9)
