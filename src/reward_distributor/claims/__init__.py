"""Claim protocol - preview, structural verification, submit and report."""

from reward_distributor.claims.preview import ClaimPreviewBuilder, PreviewOutcome, PreviewStatus, parse_wallet
from reward_distributor.claims.submit import (
    ClaimSubmitValidator,
    SettlementReport,
    SubmitOutcome,
    normalize_snapshot_ids,
)
from reward_distributor.claims.verification import verify_claim_transaction

__all__ = [
    "ClaimPreviewBuilder",
    "ClaimSubmitValidator",
    "PreviewOutcome",
    "PreviewStatus",
    "SettlementReport",
    "SubmitOutcome",
    "normalize_snapshot_ids",
    "parse_wallet",
    "verify_claim_transaction",
]
