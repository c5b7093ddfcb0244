"""
FLEET REWARDS :: Error taxonomy
===============================

    RewardsError
    ├── ConfigurationError          deployment defect, never swallowed
    │   └── UnknownChainError       caller asked for a chain we do not serve
    ├── TransientUpstreamError      retryable (RPC, Redis)
    │   ├── ChainReadError
    │   │   └── ChainTimeoutError
    │   └── AggregateStoreError
    └── InvalidAddressError         malformed account identifier
"""

from __future__ import annotations

from typing import Optional


class RewardsError(Exception):
    pass


class ConfigurationError(RewardsError):
    pass


class UnknownChainError(ConfigurationError):
    def __init__(self, chain_id):
        super().__init__(f"Configuration not found for chain ID: {chain_id}")
        self.chain_id = chain_id


class TransientUpstreamError(RewardsError):
    pass


class ChainReadError(TransientUpstreamError):
    def __init__(
        self,
        message:       str,
        chain_id:      Optional[int] = None,
        contract_name: Optional[str] = None,
        method_name:   Optional[str] = None,
    ):
        super().__init__(message)
        self.chain_id      = chain_id
        self.contract_name = contract_name
        self.method_name   = method_name


class ChainTimeoutError(ChainReadError):
    pass


class AggregateStoreError(TransientUpstreamError):
    pass


class InvalidAddressError(RewardsError, ValueError):
    def __init__(self, address):
        super().__init__(f"Invalid account address: {address!r}")
        self.address = address
