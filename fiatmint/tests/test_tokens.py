"""
Token Transfer Tests.

Member-to-member transfers, their preconditions and broadcast outcomes,
and contract metadata reads.
"""

import asyncio
from decimal import Decimal

import pytest

from fiatmint.app.core.exceptions import (
    ValidationError, MissingWalletError, ResourceNotFoundError, InsufficientBalanceError,
    TransferRejectedError, AmbiguousTransferError, ExternalServiceError,
)
from fiatmint.app.domain.tokens.token_service import TokenService
from fiatmint.app.integrations.blockchain import BlockchainRejected, BlockchainTimeout, BlockchainUnavailable
from fiatmint.app.models.user import User
from fiatmint.tests.conftest import FakeBlockchainClient, WALLET, OTHER_WALLET


class StuckTransferChain(FakeBlockchainClient):
    async def submit_transfer(self, from_address, to, amount):
        await asyncio.sleep(5)
        return await super().submit_transfer(from_address, to, amount)


class StuckReadChain(FakeBlockchainClient):
    async def get_balance(self, address):
        await asyncio.sleep(5)
        return await super().get_balance(address)


@pytest.fixture
async def recipient(db_session):
    user = User(id="user-2", email="friend@example.com", wallet_address=OTHER_WALLET)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.mark.asyncio
async def test_transfer_moves_tokens(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")

    result = await token_service.transfer(db_session, member.id, recipient.id, Decimal("40"))

    assert result.from_address == WALLET
    assert result.to_address == OTHER_WALLET
    assert result.amount == Decimal("40")
    assert blockchain.transfers == [(WALLET, OTHER_WALLET, Decimal("40"), result.tx_hash)]
    assert blockchain.balances[WALLET] == Decimal("60")
    assert blockchain.balances[OTHER_WALLET] == Decimal("40")


@pytest.mark.asyncio
async def test_transfer_of_entire_balance_is_allowed(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("40")

    await token_service.transfer(db_session, member.id, recipient.id, Decimal("40"))

    assert blockchain.balances[WALLET] == Decimal("0")


@pytest.mark.asyncio
async def test_transfer_to_self_is_rejected(db_session, member, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")

    with pytest.raises(ValidationError):
        await token_service.transfer(db_session, member.id, member.id, Decimal("1"))
    assert blockchain.transfers == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), "abc"])
async def test_transfer_rejects_bad_amounts(db_session, member, recipient, token_service, amount):
    with pytest.raises(ValidationError):
        await token_service.transfer(db_session, member.id, recipient.id, amount)


@pytest.mark.asyncio
async def test_transfer_insufficient_balance(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("10")

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await token_service.transfer(db_session, member.id, recipient.id, Decimal("10.5"))

    assert exc_info.value.details == {"required": "10.5", "available": "10"}
    assert blockchain.transfers == []


@pytest.mark.asyncio
async def test_transfer_requires_sender_wallet(db_session, recipient, token_service, blockchain):
    db_session.add(User(id="user-3", email="nowallet@example.com"))
    await db_session.commit()

    with pytest.raises(MissingWalletError) as exc_info:
        await token_service.transfer(db_session, "user-3", recipient.id, Decimal("1"))
    assert exc_info.value.details == {"user_id": "user-3"}
    assert blockchain.transfers == []


@pytest.mark.asyncio
async def test_transfer_requires_recipient_wallet(db_session, member, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")
    db_session.add(User(id="user-3", email="nowallet@example.com"))
    await db_session.commit()

    with pytest.raises(MissingWalletError) as exc_info:
        await token_service.transfer(db_session, member.id, "user-3", Decimal("1"))
    assert exc_info.value.details == {"user_id": "user-3"}


@pytest.mark.asyncio
async def test_transfer_to_unknown_user(db_session, member, token_service):
    with pytest.raises(ResourceNotFoundError):
        await token_service.transfer(db_session, member.id, "ghost", Decimal("1"))


@pytest.mark.asyncio
async def test_rejected_transfer(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")
    blockchain.fail_with = BlockchainRejected("execution reverted")

    with pytest.raises(TransferRejectedError) as exc_info:
        await token_service.transfer(db_session, member.id, recipient.id, Decimal("1"))
    assert exc_info.value.error_code == "ERR_TRANSFER_REJECTED"
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_transfer_timeout_is_ambiguous(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")
    blockchain.fail_with = BlockchainTimeout("No receipt")

    with pytest.raises(AmbiguousTransferError) as exc_info:
        await token_service.transfer(db_session, member.id, recipient.id, Decimal("1"))
    assert exc_info.value.error_code == "ERR_TRANSFER_AMBIGUOUS"


@pytest.mark.asyncio
async def test_stuck_transfer_hits_deadline(db_session, member, recipient):
    chain = StuckTransferChain()
    chain.balances[WALLET] = Decimal("100")
    service = TokenService(chain, timeout_seconds=0.05)

    with pytest.raises(AmbiguousTransferError):
        await service.transfer(db_session, member.id, recipient.id, Decimal("1"))
    assert chain.transfers == []


@pytest.mark.asyncio
async def test_stuck_balance_read_hits_deadline(db_session, member, recipient):
    service = TokenService(StuckReadChain(), timeout_seconds=0.05)

    with pytest.raises(ExternalServiceError):
        await service.transfer(db_session, member.id, recipient.id, Decimal("1"))


@pytest.mark.asyncio
async def test_unavailable_chain_on_transfer(db_session, member, recipient, token_service, blockchain):
    blockchain.balances[WALLET] = Decimal("100")
    blockchain.fail_with = BlockchainUnavailable("Node unreachable")

    with pytest.raises(ExternalServiceError):
        await token_service.transfer(db_session, member.id, recipient.id, Decimal("1"))


@pytest.mark.asyncio
async def test_token_info(token_service, blockchain):
    blockchain.minted.append((WALLET, Decimal("250"), "0x01"))

    info = await token_service.token_info()

    assert info.symbol == "FAN"
    assert info.decimals == 18
    assert info.total_supply == Decimal("250")


@pytest.mark.asyncio
async def test_token_info_wraps_chain_errors(mocker, token_service, blockchain):
    mocker.patch.object(blockchain, "get_token_info", side_effect=BlockchainUnavailable("down"))

    with pytest.raises(ExternalServiceError):
        await token_service.token_info()
