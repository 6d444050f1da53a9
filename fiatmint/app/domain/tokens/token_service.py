"""
Token Service (Domain Logic).

Member-to-member token transfers and contract metadata. Transfers move
tokens between two users' wallets on chain; nothing is minted or burned,
so no ledger entry is written.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fiatmint.app.core.exceptions import (
    ValidationError, MissingWalletError, ResourceNotFoundError, InsufficientBalanceError,
    TransferRejectedError, AmbiguousTransferError, ExternalServiceError, PersistenceError,
)
from fiatmint.app.integrations.blockchain import (
    BlockchainClient, BlockchainError, BlockchainRejected, BlockchainTimeout, BlockchainUnavailable, read_balance,
)
from fiatmint.app.models.user import User
from fiatmint.app.schemas.mint import TransferResult, TokenInfo

logger = logging.getLogger(__name__)


class TokenService:
    """Runs transfers and metadata reads against an injected blockchain client."""

    def __init__(self, blockchain: BlockchainClient, timeout_seconds: float = 90.0):
        self.blockchain = blockchain
        self.timeout_seconds = timeout_seconds

    async def transfer(self, db: AsyncSession, from_user_id: str, to_user_id: str, amount) -> TransferResult:
        """
        Transfer tokens from one member's wallet to another's.

        Both wallets must be registered and the sender's balance must cover
        the amount. The broadcast runs under the client timeout.

        Raises:
            ValidationError: non-positive amount or a transfer to oneself
            ResourceNotFoundError: unknown recipient
            MissingWalletError: sender or recipient has no wallet
            InsufficientBalanceError: sender balance below the amount
            TransferRejectedError: the chain refused the transfer
            AmbiguousTransferError: outcome unknown; check the chain before retrying
            ExternalServiceError: chain unreachable, nothing broadcast
        """
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError("Transfer amount is not a number") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Transfer amount must be positive", details={"amount": str(amount)})
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer tokens to yourself", details={"user_id": from_user_id})

        try:
            sender = await db.get(User, from_user_id)
            recipient = await db.get(User, to_user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not load transfer participants") from exc
        if recipient is None:
            raise ResourceNotFoundError("User", to_user_id)
        if sender is None or not sender.wallet_address:
            raise MissingWalletError(from_user_id)
        if not recipient.wallet_address:
            raise MissingWalletError(to_user_id)
        from_address = sender.wallet_address
        to_address = recipient.wallet_address

        try:
            balance = await read_balance(self.blockchain, from_address, self.timeout_seconds)
        except BlockchainError as exc:
            raise ExternalServiceError("blockchain", "Could not read token balance") from exc
        if balance < amount:
            raise InsufficientBalanceError(amount, balance)

        try:
            tx_hash = await asyncio.wait_for(
                self.blockchain.submit_transfer(from_address, to_address, amount),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, BlockchainTimeout) as exc:
            reason = str(exc) or "No confirmation within timeout"
            logger.error(
                "Transfer outcome unknown",
                extra={"from_user_id": from_user_id, "to_user_id": to_user_id, "reason": reason},
            )
            raise AmbiguousTransferError(reason)
        except BlockchainRejected as exc:
            logger.warning("Transfer rejected", extra={"from_user_id": from_user_id, "reason": str(exc)})
            raise TransferRejectedError(str(exc))
        except BlockchainUnavailable as exc:
            raise ExternalServiceError("blockchain", f"Blockchain unavailable: {exc}")

        logger.info(
            "Tokens transferred",
            extra={
                "from_user_id": from_user_id,
                "to_user_id": to_user_id,
                "amount": str(amount),
                "tx_hash": tx_hash,
            },
        )
        return TransferResult(
            tx_hash=tx_hash,
            amount=amount,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            from_address=from_address,
            to_address=to_address,
        )

    async def token_info(self) -> TokenInfo:
        try:
            info = await asyncio.wait_for(self.blockchain.get_token_info(), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, BlockchainError) as exc:
            raise ExternalServiceError("blockchain", "Could not read token metadata") from exc
        return TokenInfo(**info)
