"""
FLEET REWARDS :: Claim Signer
=============================
secp256k1 signer for reward claim proofs. The RewardClaim contract recovers the
signer with ecrecover, so the digest formula and the signed bytes are a fixed
wire contract and must match the on-chain verifier exactly.

Digest:
    digest = keccak256(utf8("<checksum address>:<amount>:<epoch>"))

Signed message (CLAIM_MESSAGE_ENCODING):
    hex_text  EIP-191 over the UTF-8 text of the 66-char "0x…" digest hex
              (default; what ethers `wallet.signMessage(ethers.id(...))` produces)
    bytes32   EIP-191 over the raw 32-byte digest
              = MessageHashUtils.toEthSignedMessageHash(bytes32) on-chain
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct
from web3 import Web3

from engine.errors import ConfigurationError

logger = logging.getLogger("fleet.claims")

ENCODING_BYTES32  = "bytes32"
ENCODING_HEX_TEXT = "hex_text"
CLAIM_MESSAGE_ENCODING = os.getenv("CLAIM_MESSAGE_ENCODING", ENCODING_HEX_TEXT)


def keccak256(data: bytes) -> bytes:
    """Keccak-256 as used by Ethereum (NOT NIST SHA3-256)."""
    return bytes(Web3.keccak(data))


def build_claim_digest(user_address: str, amount: str, epoch: int) -> bytes:
    address = Web3.to_checksum_address(user_address)
    return keccak256(f"{address}:{amount}:{int(epoch)}".encode("utf-8"))


def claim_message(digest: bytes, encoding: str = CLAIM_MESSAGE_ENCODING) -> SignableMessage:
    if len(digest) != 32:
        raise ValueError("digest must be 32 bytes")
    if encoding == ENCODING_BYTES32:
        return encode_defunct(primitive=digest)
    if encoding == ENCODING_HEX_TEXT:
        return encode_defunct(text="0x" + digest.hex())
    raise ConfigurationError(f"Unknown CLAIM_MESSAGE_ENCODING: {encoding!r}")


def split_signature(signature: str) -> dict:
    raw = bytes.fromhex(signature.removeprefix("0x"))
    if len(raw) != 65:
        raise ValueError("signature must be 65 bytes")
    return {
        "r": "0x" + raw[:32].hex(),
        "s": "0x" + raw[32:64].hex(),
        "v": raw[64] if raw[64] >= 27 else raw[64] + 27,
    }


class ClaimSigner:
    """
    Server signing identity. The private key signs claim digests; the derived
    address is what the contract (and ClaimProofVerifier) trusts.
    """

    def __init__(
        self,
        private_key_hex:  Optional[str] = None,
        expected_address: Optional[str] = None,
        encoding:         str = CLAIM_MESSAGE_ENCODING,
    ):
        if encoding not in (ENCODING_BYTES32, ENCODING_HEX_TEXT):
            raise ConfigurationError(f"Unknown CLAIM_MESSAGE_ENCODING: {encoding!r}")
        self.encoding  = encoding
        self.ephemeral = not private_key_hex

        if private_key_hex:
            try:
                key_bytes = bytes.fromhex(private_key_hex.strip().removeprefix("0x"))
                self._private_key = ec.derive_private_key(
                    int.from_bytes(key_bytes, "big"), ec.SECP256K1()
                )
            except ValueError as e:
                raise ConfigurationError(f"SERVER_WALLET_PRIVATE_KEY is not a valid key: {e}") from e
        else:
            logger.warning("No signer key provided: generating ephemeral key (DEV ONLY)")
            self._private_key = ec.generate_private_key(ec.SECP256K1())

        pub_bytes = self._private_key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
        self.address = Web3.to_checksum_address("0x" + keccak256(pub_bytes[1:])[-20:].hex())

        if expected_address and expected_address.lower() != self.address.lower():
            raise ConfigurationError(
                f"CLAIM_SIGNER_ADDRESS {expected_address} does not match the signing key "
                f"address {self.address}"
            )
        logger.info(f"Claim signer address: {self.address} (encoding={self.encoding})")

    @property
    def _private_key_hex(self) -> str:
        return "0x" + self._private_key.private_numbers().private_value.to_bytes(32, "big").hex()

    def sign_digest(self, digest: bytes) -> str:
        """65-byte r‖s‖v signature as 0x-prefixed hex."""
        signed = Account.sign_message(
            claim_message(digest, self.encoding), private_key=self._private_key_hex
        )
        return "0x" + bytes(signed.signature).hex()

    def recover(self, digest: bytes, signature: str) -> str:
        return Account.recover_message(claim_message(digest, self.encoding), signature=signature)
