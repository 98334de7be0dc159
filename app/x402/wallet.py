# app/x402/wallet.py
"""
Payer wallets.

The engine never holds a payer's keys implicitly: whoever calls the
submitter passes a PayerWallet that signs the native transfer (or refuses
to). KeypairWallet covers server-held agent wallets whose secret key is
configured via X402_AGENT_WALLET_SECRET.

Every transfer carries a memo with a per-payment reference, so two payments
of the same amount under the same blockhash are still distinct transactions.
"""
import logging
from typing import Optional

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from app.core.config import settings

logger = logging.getLogger(__name__)

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TYNoNtjyA9Qk2dmMuXiUcL")


class PayerWallet:
    """
    Interface for anything that can sign a SOL transfer.

    Implementations raise PaymentRejectedError when the payer declines.
    """

    @property
    def address(self) -> str:
        raise NotImplementedError

    def sign_transfer(
        self,
        recipient: str,
        lamports: int,
        recent_blockhash: str,
        reference: Optional[str] = None
    ) -> bytes:
        """
        Build and sign a system-program transfer.

        Args:
            recipient: Base58 recipient address
            lamports: Amount to transfer
            recent_blockhash: Blockhash bounding the transaction lifetime
            reference: Unique payment reference written to a memo instruction

        Returns:
            Serialized signed transaction
        """
        raise NotImplementedError


def build_transfer_transaction(
    payer: Keypair,
    recipient: str,
    lamports: int,
    recent_blockhash: str,
    reference: Optional[str] = None
) -> Transaction:
    """Signed SOL transfer from ``payer`` to ``recipient``, with an optional memo."""
    try:
        to_pubkey = Pubkey.from_string(recipient.strip())
    except Exception as e:
        raise ValueError(f"Invalid Solana address '{recipient}': {str(e)}")

    instructions = [
        transfer(
            TransferParams(
                from_pubkey=payer.pubkey(),
                to_pubkey=to_pubkey,
                lamports=lamports
            )
        )
    ]
    if reference:
        instructions.append(Instruction(MEMO_PROGRAM_ID, reference.encode("utf-8"), []))

    blockhash = Hash.from_string(recent_blockhash)
    message = Message.new_with_blockhash(instructions, payer.pubkey(), blockhash)
    return Transaction([payer], message, blockhash)


def verify_wallet_signature(wallet_address: str, message: bytes, signature: str) -> bool:
    """True if ``signature`` (base58) is ``wallet_address``'s ed25519 signature of ``message``."""
    try:
        pubkey = Pubkey.from_string(wallet_address.strip())
        parsed = Signature.from_string(signature.strip())
    except Exception as e:
        logger.debug(f"Unparseable wallet signature for {wallet_address}: {e}")
        return False
    return parsed.verify(pubkey, message)


class KeypairWallet(PayerWallet):
    """Wallet backed by a local keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairWallet":
        return cls(Keypair.from_base58_string(secret.strip()))

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    def sign_transfer(
        self,
        recipient: str,
        lamports: int,
        recent_blockhash: str,
        reference: Optional[str] = None
    ) -> bytes:
        transaction = build_transfer_transaction(self._keypair, recipient, lamports, recent_blockhash, reference)
        return bytes(transaction)

    def sign_message(self, message: bytes) -> str:
        """Base58 ed25519 signature of ``message``."""
        return str(self._keypair.sign_message(message))


def load_agent_wallet(secret: Optional[str] = None) -> Optional[KeypairWallet]:
    """The configured server-held agent wallet, or None when not configured."""
    secret = secret if secret is not None else settings.X402_AGENT_WALLET_SECRET
    if not secret:
        return None
    wallet = KeypairWallet.from_base58(secret)
    logger.info(f"Loaded agent wallet {wallet.address}")
    return wallet
