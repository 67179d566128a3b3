from .chain import ChainClient, ConfirmationResult, ProtocolAction, ReserveState
from .config import ChainConfig
from .dry_run import DryRunChainClient
from .executor import StrategyExecutor
from .hub_lock import HubWalletBusyError, HubWalletLock
from .types import ExecutionOutcome, GasTopUpPolicy
from .web3_client import Web3ChainClient

__all__ = [
    "ChainClient",
    "ChainConfig",
    "ConfirmationResult",
    "DryRunChainClient",
    "ExecutionOutcome",
    "GasTopUpPolicy",
    "HubWalletBusyError",
    "HubWalletLock",
    "ProtocolAction",
    "ReserveState",
    "StrategyExecutor",
    "Web3ChainClient",
]
