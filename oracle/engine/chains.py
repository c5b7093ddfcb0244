"""
FLEET REWARDS :: Multichain configuration
==========================================
Chains are discovered from environment variables:

    CHAIN_<id>_RPC              JSON-RPC endpoint (or <id>_RPC_URL)
    CHAIN_<id>_NAME             display name
    CONTRACT_<id>_REWARD_CLAIM  RewardClaim contract address
    CONTRACT_<id>_UFO, ..._SHIP_NFT, ..._STATION_NFT, ..._MARKETPLACE, ..._PACK_SALE

A chain without an RPC URL is skipped.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from web3 import Web3

from engine.errors import ConfigurationError, InvalidAddressError, UnknownChainError

logger = logging.getLogger("fleet.chain")

DEFAULT_CHAIN_ID = int(os.getenv("DEFAULT_CHAIN_ID", "11124"))

# env suffix -> contract name used by callers
CONTRACT_ENV_SUFFIXES = {
    "UFO":          "UFO",
    "SHIP_NFT":     "ShipNFT",
    "STATION_NFT":  "StationNFT",
    "MARKETPLACE":  "Marketplace",
    "PACK_SALE":    "PackSale",
    "REWARD_CLAIM": "RewardClaim",
}

_CHAIN_KEY_RE = re.compile(r"^(?:CHAIN|CONTRACT)_(\d+)_")


# ---------------------------------------------------------------------------
# Contract ABIs (view functions only)
# ---------------------------------------------------------------------------
def _view(name: str, inputs: List[dict], output_type: str = "uint256") -> dict:
    return {
        "inputs":          inputs,
        "name":            name,
        "outputs":         [{"internalType": output_type, "name": "", "type": output_type}],
        "stateMutability": "view",
        "type":            "function",
    }


REWARD_CLAIM_ABI = [
    _view("getFleetPower", [{"internalType": "address", "name": "user", "type": "address"}]),
    _view("getTotalFleetPower", []),
    _view("baseEmissionRate", []),
    _view("totalEmitted", []),
]

CONTRACT_ABIS: Dict[str, list] = {
    "RewardClaim": REWARD_CLAIM_ABI,
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------
@dataclass
class ChainConfig:
    chain_id:  int
    name:      str
    rpc_url:   str
    contracts: Dict[str, str] = field(default_factory=dict)


def build_chain_configs(environ: Optional[Mapping[str, str]] = None) -> Dict[int, ChainConfig]:
    env = os.environ if environ is None else environ

    chain_ids: List[int] = []
    for key in env:
        m = _CHAIN_KEY_RE.match(key)
        if m and int(m.group(1)) not in chain_ids:
            chain_ids.append(int(m.group(1)))

    configs: Dict[int, ChainConfig] = {}
    for chain_id in sorted(chain_ids):
        rpc_url = env.get(f"CHAIN_{chain_id}_RPC") or env.get(f"{chain_id}_RPC_URL")
        if not rpc_url:
            logger.warning(f"RPC URL not found for chain {chain_id}. Skipping.")
            continue

        contracts = {}
        for suffix, name in CONTRACT_ENV_SUFFIXES.items():
            address = env.get(f"CONTRACT_{chain_id}_{suffix}")
            if address:
                contracts[name] = address

        configs[chain_id] = ChainConfig(
            chain_id  = chain_id,
            name      = env.get(f"CHAIN_{chain_id}_NAME", f"Chain {chain_id}"),
            rpc_url   = rpc_url,
            contracts = contracts,
        )

        if "RewardClaim" not in contracts:
            logger.warning(
                f"RewardClaim contract not configured for chain {chain_id}. "
                "Reward accounting will fail for this chain."
            )

    return configs


class ChainRegistry:
    """Read-only view over the configured chains."""

    def __init__(self, configs: Dict[int, ChainConfig], default_chain_id: int = DEFAULT_CHAIN_ID):
        self._configs         = dict(configs)
        self.default_chain_id = default_chain_id

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ChainRegistry":
        env = os.environ if environ is None else environ
        default = int(env.get("DEFAULT_CHAIN_ID", DEFAULT_CHAIN_ID))
        return cls(build_chain_configs(env), default_chain_id=default)

    def chain_ids(self) -> List[int]:
        return sorted(self._configs)

    def get(self, chain_id) -> ChainConfig:
        try:
            return self._configs[int(chain_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownChainError(chain_id) from None

    def contract_address(self, contract_name: str, chain_id) -> str:
        config = self.get(chain_id)
        address = config.contracts.get(contract_name)
        if not address:
            raise ConfigurationError(
                f"Contract {contract_name} not configured for chain {config.chain_id}"
            )
        return address

    def resolve(self, chain_id=None) -> int:
        """Default the chain id and check it is configured."""
        return self.get(self.default_chain_id if chain_id is None else chain_id).chain_id


def normalize_address(address) -> str:
    """
    EIP-55 checksum form, or InvalidAddressError.

    All-lowercase / all-uppercase hex carries no checksum and is accepted.
    Mixed case must be a valid checksum.
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddressError(address)
    hex_part = address[2:] if address[:2].lower() == "0x" else address
    if hex_part not in (hex_part.lower(), hex_part.upper()) and not Web3.is_checksum_address("0x" + hex_part):
        raise InvalidAddressError(address)
    return Web3.to_checksum_address(address)
