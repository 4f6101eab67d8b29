"""Error taxonomy shared by the cycle engines, claim protocol and API."""

from __future__ import annotations

import uuid


def new_correlation_id() -> str:
    """Short id attached to every log line of one public operation."""
    return uuid.uuid4().hex[:12]


class DistributorError(Exception):
    """Base exception for reward distributor errors."""

    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ClaimValidationError(DistributorError):
    """Bad input or a transaction that fails structural verification."""

    code = "validation_error"


class NothingToClaimError(ClaimValidationError):
    """Ledger re-derivation found nothing unclaimed for the request."""

    code = "nothing_to_claim"


class RaceLostError(DistributorError):
    """Another writer created the unique row first."""

    code = "race_lost"


class TransientUpstreamError(DistributorError):
    """Rate limit, stale blockhash or node lag upstream."""

    code = "upstream_unavailable"
    retryable = True


class InsufficientLiquidityError(DistributorError):
    """The treasury cannot fund the claim right now."""

    code = "treasury_unavailable"
    retryable = True


class ClaimInProgressError(DistributorError):
    """The wallet already has a claim being processed."""

    code = "claim_in_progress"
    retryable = True


class RateLimitedError(DistributorError):
    """Caller exceeded its admission budget."""

    code = "rate_limited"
    retryable = True


class InternalError(DistributorError):
    """Unexpected failure; the message is safe to show to callers."""

    code = "internal_error"
