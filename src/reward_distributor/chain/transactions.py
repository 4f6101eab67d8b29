"""Claim transaction construction, co-signing and instruction decoding.

The claim transaction carries three instructions:

1. Idempotent creation of the claimant's associated token account
   (payer = claimant).
2. SPL ``TransferChecked`` of the reward token from the treasury's associated
   token account to the claimant's (authority = treasury).
3. A flat service-fee system transfer from the claimant to the operator.

The claimant is the fee payer and signs first; the treasury signature is added
afterwards, at submit time.
"""

from __future__ import annotations

import base64
import hashlib
import struct
from collections.abc import Sequence
from dataclasses import dataclass

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ATA_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

TRANSFER_CHECKED_OPCODE = 12
CREATE_IDEMPOTENT_OPCODE = 1
_TRANSFER_CHECKED = struct.Struct("<BQB")


class TransactionDecodeError(ValueError):
    """Raised when bytes are not a decodable transaction."""


def associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Derive the associated token account of ``owner`` for ``mint``."""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ATA_PROGRAM_ID,
    )
    return address


def create_ata_idempotent_ix(
    *,
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    ata = associated_token_address(owner, mint, token_program)
    return Instruction(
        ATA_PROGRAM_ID,
        bytes([CREATE_IDEMPOTENT_OPCODE]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(ata, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program, is_signer=False, is_writable=False),
        ],
    )


def encode_transfer_checked(amount: int, decimals: int) -> bytes:
    return _TRANSFER_CHECKED.pack(TRANSFER_CHECKED_OPCODE, amount, decimals)


def transfer_checked_ix(
    *,
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    amount: int,
    decimals: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    if amount <= 0:
        raise ValueError("Transfer amount must be positive")
    return Instruction(
        token_program,
        encode_transfer_checked(amount, decimals),
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def sol_transfer_ix(*, source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
    return transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=lamports))


@dataclass(frozen=True)
class ClaimTransferSpec:
    """Everything needed to build or verify one claim transaction."""

    claimant: Pubkey
    treasury: Pubkey
    operator: Pubkey
    mint: Pubkey
    amount_raw: int
    decimals: int
    service_fee_lamports: int
    token_program: Pubkey = TOKEN_PROGRAM_ID

    @property
    def treasury_ata(self) -> Pubkey:
        return associated_token_address(self.treasury, self.mint, self.token_program)

    @property
    def claimant_ata(self) -> Pubkey:
        return associated_token_address(self.claimant, self.mint, self.token_program)


def build_claim_instructions(spec: ClaimTransferSpec) -> list[Instruction]:
    instructions = [
        create_ata_idempotent_ix(
            payer=spec.claimant,
            owner=spec.claimant,
            mint=spec.mint,
            token_program=spec.token_program,
        ),
        transfer_checked_ix(
            source=spec.treasury_ata,
            mint=spec.mint,
            destination=spec.claimant_ata,
            authority=spec.treasury,
            amount=spec.amount_raw,
            decimals=spec.decimals,
            token_program=spec.token_program,
        ),
    ]
    if spec.service_fee_lamports > 0:
        instructions.append(
            sol_transfer_ix(source=spec.claimant, destination=spec.operator, lamports=spec.service_fee_lamports)
        )
    return instructions


def build_unsigned_claim_transaction(spec: ClaimTransferSpec, blockhash: Hash) -> VersionedTransaction:
    """Compile a v0 claim transaction with empty signature slots."""
    message = MessageV0.try_compile(spec.claimant, build_claim_instructions(spec), [], blockhash)
    placeholders = [Signature.default()] * message.header.num_required_signatures
    return VersionedTransaction.populate(message, placeholders)


def build_sol_transfer_transaction(
    source: Keypair,
    destination: Pubkey,
    lamports: int,
    blockhash: Hash,
) -> VersionedTransaction:
    """Compile and sign a single system transfer paid by ``source``."""
    ix = sol_transfer_ix(source=source.pubkey(), destination=destination, lamports=lamports)
    message = MessageV0.try_compile(source.pubkey(), [ix], [], blockhash)
    return VersionedTransaction(message, [source])


def serialize_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode("ascii")


def deserialize_transaction(encoded: str) -> VersionedTransaction:
    """Decode a base64 transaction.

    Raises:
        TransactionDecodeError: If the payload is not a valid transaction.
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (ValueError, TypeError) as e:
        raise TransactionDecodeError(f"Malformed base64: {e}") from e
    try:
        return VersionedTransaction.from_bytes(raw)
    except Exception as e:  # solders raises its own error types for bad bytes
        raise TransactionDecodeError(f"Malformed transaction: {e}") from e


def message_bytes(tx: VersionedTransaction) -> bytes:
    return to_bytes_versioned(tx.message)


def message_hash(tx: VersionedTransaction) -> str:
    """Hex sha256 of the serialized message (signatures excluded)."""
    return hashlib.sha256(message_bytes(tx)).hexdigest()


def signer_keys(tx: VersionedTransaction) -> list[Pubkey]:
    message = tx.message
    return list(message.account_keys[: message.header.num_required_signatures])


def fee_payer(tx: VersionedTransaction) -> Pubkey:
    return tx.message.account_keys[0]


def has_valid_signature(tx: VersionedTransaction, signer: Pubkey) -> bool:
    """Whether ``signer``'s slot holds a valid signature over the message."""
    keys = signer_keys(tx)
    if signer not in keys:
        return False
    signature = tx.signatures[keys.index(signer)]
    if signature == Signature.default():
        return False
    return signature.verify(signer, message_bytes(tx))


def co_sign(tx: VersionedTransaction, keypair: Keypair) -> VersionedTransaction:
    """Add ``keypair``'s signature in its slot, keeping every other signature.

    Raises:
        ValueError: If ``keypair`` is not a required signer of the message.
    """
    keys = signer_keys(tx)
    signer = keypair.pubkey()
    if signer not in keys:
        raise ValueError(f"{signer} is not a required signer of this transaction")
    signatures = list(tx.signatures)
    signatures[keys.index(signer)] = keypair.sign_message(message_bytes(tx))
    return VersionedTransaction.populate(tx.message, signatures)


def transaction_signature(tx: VersionedTransaction) -> str:
    """Network id of a signed transaction (the fee payer's signature)."""
    return str(tx.signatures[0])


# ============================================================================
# Decoding
# ============================================================================


@dataclass(frozen=True)
class DecodedInstruction:
    """A compiled instruction with its account indexes resolved."""

    index: int
    program_id: Pubkey
    accounts: tuple[Pubkey, ...]
    data: bytes


@dataclass(frozen=True)
class TransferChecked:
    source: Pubkey
    mint: Pubkey
    destination: Pubkey
    authority: Pubkey
    amount: int
    decimals: int


def decode_instructions(tx: VersionedTransaction) -> list[DecodedInstruction]:
    """Resolve every instruction against the static account keys.

    Raises:
        TransactionDecodeError: If an instruction references an account
            outside the static keys (address lookup tables are not accepted).
    """
    message = tx.message
    keys: Sequence[Pubkey] = message.account_keys
    decoded: list[DecodedInstruction] = []
    for i, ix in enumerate(message.instructions):
        indexes = [ix.program_id_index, *list(ix.accounts)]
        if any(idx >= len(keys) for idx in indexes):
            raise TransactionDecodeError("Transaction references address lookup table accounts")
        decoded.append(
            DecodedInstruction(
                index=i,
                program_id=keys[ix.program_id_index],
                accounts=tuple(keys[a] for a in ix.accounts),
                data=bytes(ix.data),
            )
        )
    return decoded


def parse_transfer_checked(ix: DecodedInstruction) -> TransferChecked | None:
    """Decode a token-program TransferChecked instruction, else None."""
    if ix.program_id not in TOKEN_PROGRAMS:
        return None
    if len(ix.data) != _TRANSFER_CHECKED.size or ix.data[0] != TRANSFER_CHECKED_OPCODE:
        return None
    if len(ix.accounts) < 4:
        return None
    _opcode, amount, decimals = _TRANSFER_CHECKED.unpack(ix.data)
    source, mint, destination, authority = ix.accounts[:4]
    return TransferChecked(
        source=source,
        mint=mint,
        destination=destination,
        authority=authority,
        amount=amount,
        decimals=decimals,
    )
