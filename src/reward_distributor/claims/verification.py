"""Structural verification of claim transactions.

Client-supplied amounts are advisory: a claim is accepted only if the signed
transaction contains exactly the transfer the server would have built, and
nothing else that the treasury's signature could authorize.
"""

from __future__ import annotations

import logging

from solders.transaction import VersionedTransaction

from reward_distributor.chain.transactions import (
    ClaimTransferSpec,
    DecodedInstruction,
    TransactionDecodeError,
    TransferChecked,
    decode_instructions,
    fee_payer,
    parse_transfer_checked,
)
from reward_distributor.errors import ClaimValidationError

logger = logging.getLogger(__name__)


def _reject(reason: str) -> ClaimValidationError:
    return ClaimValidationError(f"Transaction rejected: {reason}")


def verify_claim_transaction(
    tx: VersionedTransaction,
    spec: ClaimTransferSpec,
    *,
    allow_less: bool = False,
) -> TransferChecked:
    """Check ``tx`` against the transfer described by ``spec``.

    Args:
        tx: Signed (or landed) claim transaction.
        spec: Expected claimant, treasury, mint, amount and decimals.
        allow_less: Accept any positive amount up to ``spec.amount_raw``
            instead of an exact match (used for client-reported claims).

    Returns:
        The verified transfer.

    Raises:
        ClaimValidationError: On any structural or numeric mismatch.
    """
    if fee_payer(tx) != spec.claimant:
        raise _reject("fee payer is not the claiming wallet")

    try:
        instructions = decode_instructions(tx)
    except TransactionDecodeError as e:
        raise _reject(str(e)) from e

    transfer: TransferChecked | None = None
    transfer_ix: DecodedInstruction | None = None
    for ix in instructions:
        if ix.program_id != spec.token_program:
            continue
        parsed = parse_transfer_checked(ix)
        if parsed is None or parsed.authority != spec.treasury:
            continue
        if transfer is not None:
            raise _reject("more than one treasury transfer")
        transfer, transfer_ix = parsed, ix

    if transfer is None or transfer_ix is None:
        raise _reject("treasury transfer instruction not found")

    if transfer.source != spec.treasury_ata:
        raise _reject("transfer source is not the treasury token account")
    if transfer.mint != spec.mint:
        raise _reject("transfer mint is not the reward mint")
    if transfer.destination != spec.claimant_ata:
        raise _reject("transfer destination is not the claimant token account")
    if transfer.decimals != spec.decimals:
        raise _reject(f"transfer decimals {transfer.decimals} != {spec.decimals}")
    if allow_less:
        if not 0 < transfer.amount <= spec.amount_raw:
            raise _reject(f"transfer amount {transfer.amount} exceeds entitlement {spec.amount_raw}")
    elif transfer.amount != spec.amount_raw:
        raise _reject(f"transfer amount {transfer.amount} != expected {spec.amount_raw}")

    for ix in instructions:
        if ix.index == transfer_ix.index:
            continue
        if spec.treasury in ix.accounts or ix.program_id == spec.treasury:
            raise _reject(f"instruction {ix.index} also references the treasury")

    return transfer
