"""
FLEET REWARDS :: Claim Proofs
=============================
Off-chain computation becomes on-chain-redeemable here.

Issuer:   amount (strict calculator) + epoch + server signature → ClaimProof
Verifier: recompute digest, recover signer, check epoch freshness.

The verifier is an advisory fast-rejection path; the RewardClaim contract
re-runs the equivalent check (and owns replay protection) before minting.
Proofs are never persisted off-chain.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Union

from engine.claim_signer import ClaimSigner, build_claim_digest, split_signature
from engine.reward_calculator import REWARD_TOKEN_DECIMALS, RewardCalculator

logger = logging.getLogger("fleet.claims")

EPOCH_SECONDS        = 3600
CLAIM_MAX_AGE_EPOCHS = int(os.getenv("CLAIM_MAX_AGE_EPOCHS", "24"))

REASON_INVALID_SIGNATURE = "Invalid signature"
REASON_EXPIRED           = "Claim expired"
REASON_FAILED            = "Verification failed"


def current_epoch(now: float) -> int:
    return int(now // EPOCH_SECONDS)


@dataclass(frozen=True)
class ClaimProof:
    user_address: str
    amount:       str
    epoch:        int
    proof:        str
    chain_id:     int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ClaimProof":
        return cls(
            user_address = str(data["user_address"]),
            amount       = str(data["amount"]),
            epoch        = int(data["epoch"]),
            proof        = str(data["proof"]),
            chain_id     = int(data["chain_id"]),
        )

    def to_contract_args(self, decimals: int = REWARD_TOKEN_DECIMALS) -> dict:
        """Arguments for RewardClaim.claim(amount, epoch, v, r, s)."""
        amount_wei = int(Decimal(self.amount).scaleb(decimals))
        return {
            "amount_wei": str(amount_wei),
            "epoch":      self.epoch,
            **split_signature(self.proof),
        }


@dataclass(frozen=True)
class VerificationResult:
    valid:  bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        if self.valid:
            return {"valid": True}
        return {"valid": False, "reason": self.reason}


class ClaimProofIssuer:

    def __init__(
        self,
        calculator: RewardCalculator,
        signer:     ClaimSigner,
        clock:      Callable[[], float] = time.time,
    ):
        self.calculator = calculator
        self.signer     = signer
        self._clock     = clock

    async def issue(self, user_address: str, chain_id: Optional[int] = None) -> ClaimProof:
        # strict: upstream failures propagate instead of signing a "0" claim
        reward = await self.calculator.estimate(user_address, chain_id, strict=True)
        epoch  = current_epoch(self._clock())
        digest = build_claim_digest(reward.user_address, reward.amount, epoch)
        proof  = ClaimProof(
            user_address = reward.user_address,
            amount       = reward.amount,
            epoch        = epoch,
            proof        = self.signer.sign_digest(digest),
            chain_id     = reward.chain_id,
        )
        logger.info(
            f"[CLAIM] Issued proof for {proof.user_address} on chain {proof.chain_id}: "
            f"amount={proof.amount} epoch={epoch}"
        )
        return proof


class ClaimProofVerifier:

    def __init__(
        self,
        signer:         ClaimSigner,
        max_age_epochs: int = CLAIM_MAX_AGE_EPOCHS,
        clock:          Callable[[], float] = time.time,
    ):
        self.signer         = signer
        self.max_age_epochs = max_age_epochs
        self._clock         = clock

    def verify(self, claim: Union[ClaimProof, Mapping[str, Any]]) -> VerificationResult:
        try:
            if not isinstance(claim, ClaimProof):
                claim = ClaimProof.from_mapping(claim)

            digest = build_claim_digest(claim.user_address, claim.amount, claim.epoch)
            signer_address = self.signer.recover(digest, claim.proof)
            if signer_address.lower() != self.signer.address.lower():
                logger.warning(f"[VERIFY] Signature mismatch for {claim.user_address}")
                return VerificationResult(False, REASON_INVALID_SIGNATURE)

            if current_epoch(self._clock()) - claim.epoch > self.max_age_epochs:
                logger.info(f"[VERIFY] Expired claim for {claim.user_address} (epoch {claim.epoch})")
                return VerificationResult(False, REASON_EXPIRED)

            return VerificationResult(True)
        except Exception as e:
            logger.warning(f"[VERIFY] Verification failed: {e}")
            return VerificationResult(False, REASON_FAILED)
