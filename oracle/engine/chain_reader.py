"""
FLEET REWARDS :: Chain Reader
=============================
Async contract reads over web3.py, one provider per chain.

Every call is bounded by CHAIN_READ_TIMEOUT_SEC and retried on transient
failure (linear back-off). Misconfiguration, including a call that returns no
data (no contract at the address) or reverts, is raised immediately as
ConfigurationError and never retried.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from engine.chains import CONTRACT_ABIS, ChainRegistry
from engine.errors import ChainReadError, ChainTimeoutError, ConfigurationError

logger = logging.getLogger("fleet.chain")

CHAIN_READ_TIMEOUT_SEC = float(os.getenv("CHAIN_READ_TIMEOUT_SEC", "10"))
CHAIN_READ_ATTEMPTS    = int(os.getenv("CHAIN_READ_ATTEMPTS", "3"))
CHAIN_READ_BACKOFF_SEC = float(os.getenv("CHAIN_READ_BACKOFF_SEC", "0.5"))


class ChainReader:

    def __init__(
        self,
        registry: ChainRegistry,
        timeout:  float = CHAIN_READ_TIMEOUT_SEC,
        attempts: int   = CHAIN_READ_ATTEMPTS,
        backoff:  float = CHAIN_READ_BACKOFF_SEC,
    ):
        self.registry  = registry
        self.timeout   = timeout
        self.attempts  = max(1, attempts)
        self.backoff   = backoff
        self._web3:      Dict[int, AsyncWeb3] = {}
        self._contracts: Dict[tuple, Any]     = {}

    # ------------------------------------------------------------------
    def _w3(self, chain_id: int) -> AsyncWeb3:
        if chain_id not in self._web3:
            config = self.registry.get(chain_id)
            self._web3[chain_id] = AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
            logger.info(f"Provider ready for chain {chain_id} ({config.name})")
        return self._web3[chain_id]

    def _contract(self, contract_name: str, chain_id: int):
        key = (contract_name, chain_id)
        if key not in self._contracts:
            abi = CONTRACT_ABIS.get(contract_name)
            if abi is None:
                raise ConfigurationError(f"No ABI registered for contract {contract_name}")
            address = self.registry.contract_address(contract_name, chain_id)
            self._contracts[key] = self._w3(chain_id).eth.contract(
                address=Web3.to_checksum_address(address),
                abi=abi,
            )
        return self._contracts[key]

    # ------------------------------------------------------------------
    async def read(
        self,
        contract_name: str,
        method_name:   str,
        args:          Optional[Sequence[Any]] = None,
        chain_id:      Optional[int] = None,
    ) -> Any:
        chain_id = self.registry.resolve(chain_id)
        contract = self._contract(contract_name, chain_id)
        args = list(args or [])
        where = f"{contract_name}.{method_name} on chain {chain_id}"

        last_error: Optional[ChainReadError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                call = getattr(contract.functions, method_name)(*args).call()
                return await asyncio.wait_for(call, timeout=self.timeout)
            except asyncio.TimeoutError:
                last_error = ChainTimeoutError(
                    f"{where} timed out after {self.timeout}s",
                    chain_id, contract_name, method_name,
                )
            except ConfigurationError:
                raise
            except (BadFunctionCallOutput, ContractLogicError) as e:
                # no code at the address, or the view reverted: retrying cannot help
                logger.error(f"[READ] {where} failed permanently: {e}")
                raise ConfigurationError(f"{where} failed permanently: {e}") from e
            except Exception as e:
                last_error = ChainReadError(
                    f"{where} failed: {e}",
                    chain_id, contract_name, method_name,
                )
                last_error.__cause__ = e

            if attempt < self.attempts:
                logger.warning(f"[READ] {last_error} (attempt {attempt}/{self.attempts}), retrying")
                await asyncio.sleep(self.backoff * attempt)

        logger.error(f"[READ] {last_error}")
        raise last_error

    # ------------------------------------------------------------------
    async def get_fleet_power(self, user_address: str, chain_id: int) -> int:
        power = await self.read(
            "RewardClaim", "getFleetPower", [Web3.to_checksum_address(user_address)], chain_id
        )
        return int(power)

    async def get_total_fleet_power(self, chain_id: int) -> int:
        return int(await self.read("RewardClaim", "getTotalFleetPower", [], chain_id))

    async def get_base_emission_rate(self, chain_id: int) -> int:
        """Emission rate in token base units per fleet-power unit per hour."""
        return int(await self.read("RewardClaim", "baseEmissionRate", [], chain_id))
