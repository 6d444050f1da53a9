"""
Governance Tests.

Vote windows, the token-holder gate, one ballot per voter and tally
percentages.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import select

from fiatmint.app.core.exceptions import (
    AlreadyVotedError, InvalidStateError, ValidationError, ResourceNotFoundError,
    MissingWalletError, InsufficientBalanceError, ExternalServiceError,
)
from fiatmint.app.db.session import utcnow
from fiatmint.app.domain.governance.vote_service import VoteService, VoteStatus, vote_status
from fiatmint.app.integrations.blockchain import BlockchainUnavailable
from fiatmint.app.models.ledger_entry import LedgerEntry
from fiatmint.app.models.ledger_enums import LedgerKind, Currency
from fiatmint.app.models.user import User
from fiatmint.app.models.vote import Vote, VoteBallot
from fiatmint.app.schemas.vote import VoteCreate, VoteUpdate

VOTERS = ("u1", "u2", "u3", "u4")


def _wallet(index):
    return "0x" + format(index, "040x")


@pytest.fixture
async def voters(db_session, blockchain):
    """Token holders u1..u4, each with its own funded wallet."""
    for index, user_id in enumerate(VOTERS, start=1):
        db_session.add(User(id=user_id, email=f"{user_id}@example.com", wallet_address=_wallet(index)))
        blockchain.balances[_wallet(index)] = Decimal(index)
    await db_session.commit()
    return VOTERS


async def _vote_entries(db):
    return (await db.execute(
        select(LedgerEntry).where(LedgerEntry.kind == LedgerKind.VOTE)
    )).scalars().all()


async def _vote(db, start_offset, end_offset):
    now = utcnow()
    return await VoteService.create_vote(
        db,
        VoteCreate(
            title="Merch colour",
            start_at=now + start_offset,
            end_at=now + end_offset,
            options=["Red", "Blue"],
        ),
        actor_id="admin-1",
    )


@pytest.mark.asyncio
async def test_tally_percentages(db_session, open_vote, voters, blockchain):
    for user_id in ("u1", "u2", "u3"):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], user_id, open_vote["a"], blockchain)
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u4", open_vote["b"], blockchain)

    results = await VoteService.get_results(db_session, open_vote["vote_id"])

    assert results.total_votes == 4
    assert results.status == VoteStatus.ACTIVE
    assert [(r.label, r.votes, r.percentage) for r in results.results] == [
        ("Berlin", 3, 75.0),
        ("Lisbon", 1, 25.0),
    ]


@pytest.mark.asyncio
async def test_results_ordered_by_votes(db_session, open_vote, voters, blockchain):
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["b"], blockchain)

    results = await VoteService.get_results(db_session, open_vote["vote_id"])

    assert [r.label for r in results.results] == ["Lisbon", "Berlin"]
    assert results.results[0].percentage == 100.0
    assert results.results[1].percentage == 0.0


@pytest.mark.asyncio
async def test_results_without_ballots(db_session, open_vote):
    results = await VoteService.get_results(db_session, open_vote["vote_id"])

    assert results.total_votes == 0
    assert [(r.label, r.votes, r.percentage) for r in results.results] == [
        ("Berlin", 0, 0.0),
        ("Lisbon", 0, 0.0),
    ]


@pytest.mark.asyncio
async def test_second_ballot_is_refused(db_session, open_vote, voters, blockchain):
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)

    with pytest.raises(AlreadyVotedError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["b"], blockchain)

    results = await VoteService.get_results(db_session, open_vote["vote_id"])
    assert results.total_votes == 1


@pytest.mark.asyncio
async def test_ballot_is_recorded_in_the_ledger(db_session, open_vote, voters, blockchain):
    ballot = await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u2", open_vote["a"], blockchain)

    entries = await _vote_entries(db_session)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.reference_id == open_vote["vote_id"]
    assert entry.amount == Decimal("0")
    assert entry.currency == Currency.TOKEN
    assert entry.meta_data == {
        "ballot_id": ballot.id,
        "user_id": "u2",
        "option_id": open_vote["a"],
        "voting_power": "2",
    }


@pytest.mark.asyncio
async def test_refused_duplicate_writes_no_second_ledger_entry(db_session, open_vote, voters, blockchain):
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)

    with pytest.raises(AlreadyVotedError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["b"], blockchain)

    assert len(await _vote_entries(db_session)) == 1


@pytest.mark.asyncio
async def test_voter_without_wallet_is_refused(db_session, open_vote, blockchain):
    db_session.add(User(id="u9", email="u9@example.com"))
    await db_session.commit()

    with pytest.raises(MissingWalletError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u9", open_vote["a"], blockchain)

    with pytest.raises(MissingWalletError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "unknown", open_vote["a"], blockchain)


@pytest.mark.asyncio
async def test_voter_without_tokens_is_refused(db_session, open_vote, voters, blockchain):
    blockchain.balances[_wallet(1)] = Decimal("0")

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)

    assert exc_info.value.details == {"required": "> 0", "available": "0"}
    assert (await db_session.execute(select(VoteBallot.id))).all() == []
    assert await _vote_entries(db_session) == []


@pytest.mark.asyncio
async def test_voter_balance_unavailable(db_session, open_vote, voters, blockchain):
    blockchain.balance_error = BlockchainUnavailable("node down")

    with pytest.raises(ExternalServiceError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)


@pytest.mark.asyncio
async def test_option_from_another_vote_is_refused(db_session, open_vote, blockchain):
    other = await _vote(db_session, timedelta(hours=-1), timedelta(hours=1))

    with pytest.raises(ValidationError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", other.options[0].id, blockchain)


@pytest.mark.asyncio
async def test_closed_vote_refuses_ballots(db_session, blockchain):
    vote = await _vote(db_session, timedelta(days=-2), timedelta(days=-1))

    assert vote_status(vote) == VoteStatus.CLOSED
    with pytest.raises(InvalidStateError):
        await VoteService.cast_ballot(db_session, vote.id, "u1", vote.options[0].id, blockchain)


@pytest.mark.asyncio
async def test_scheduled_vote_refuses_ballots(db_session, blockchain):
    vote = await _vote(db_session, timedelta(days=1), timedelta(days=2))

    assert vote_status(vote) == VoteStatus.SCHEDULED
    with pytest.raises(InvalidStateError):
        await VoteService.cast_ballot(db_session, vote.id, "u1", vote.options[0].id, blockchain)


@pytest.mark.asyncio
async def test_deactivated_vote_refuses_ballots(db_session, open_vote, blockchain):
    vote = await VoteService.deactivate_vote(db_session, open_vote["vote_id"], actor_id="admin-1")

    assert vote_status(vote) == VoteStatus.INACTIVE
    with pytest.raises(InvalidStateError):
        await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)


@pytest.mark.asyncio
async def test_unknown_vote(db_session):
    with pytest.raises(ResourceNotFoundError):
        await VoteService.get_results(db_session, "missing")


@pytest.mark.asyncio
async def test_create_vote_with_options(db_session):
    vote = await _vote(db_session, timedelta(hours=-1), timedelta(hours=1))

    assert sorted(o.label for o in vote.options) == ["Blue", "Red"]
    assert vote.active is True


def test_vote_schema_rejects_bad_window_and_options():
    now = utcnow()
    with pytest.raises(SchemaValidationError):
        VoteCreate(title="x", start_at=now, end_at=now, options=["a", "b"])
    with pytest.raises(SchemaValidationError):
        VoteCreate(title="x", start_at=now, end_at=now + timedelta(days=1), options=["a"])
    with pytest.raises(SchemaValidationError):
        VoteCreate(title="x", start_at=now, end_at=now + timedelta(days=1), options=["a", " a "])
    with pytest.raises(SchemaValidationError):
        VoteCreate(title="x", start_at=now, end_at=now + timedelta(days=1), options=["a", "  "])


@pytest.mark.asyncio
async def test_update_vote_window(db_session, open_vote):
    vote = await VoteService.get_vote(db_session, open_vote["vote_id"])

    with pytest.raises(ValidationError):
        await VoteService.update_vote(
            db_session, open_vote["vote_id"], VoteUpdate(end_at=vote.start_at - timedelta(minutes=1)), actor_id="admin-1"
        )

    updated = await VoteService.update_vote(db_session, open_vote["vote_id"], VoteUpdate(title="Final venue"), actor_id="admin-1")
    assert updated.title == "Final venue"


@pytest.mark.asyncio
async def test_add_and_remove_option(db_session, open_vote):
    option = await VoteService.add_option(db_session, open_vote["vote_id"], "Porto", actor_id="admin-1")

    with pytest.raises(ValidationError):
        await VoteService.add_option(db_session, open_vote["vote_id"], "Porto", actor_id="admin-1")

    await VoteService.remove_option(db_session, option.id, actor_id="admin-1")

    vote = await VoteService.get_vote(db_session, open_vote["vote_id"])
    assert [o.label for o in vote.options] == ["Berlin", "Lisbon"]


@pytest.mark.asyncio
async def test_option_with_ballots_cannot_be_removed(db_session, open_vote, voters, blockchain):
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)

    with pytest.raises(InvalidStateError):
        await VoteService.remove_option(db_session, open_vote["a"], actor_id="admin-1")


@pytest.mark.asyncio
async def test_list_votes_active_only(db_session, open_vote):
    await _vote(db_session, timedelta(days=-2), timedelta(days=-1))

    everything = await VoteService.list_votes(db_session)
    active = await VoteService.list_votes(db_session, active_only=True)

    assert len(everything) == 2
    assert [v.id for v in active] == [open_vote["vote_id"]]


@pytest.mark.asyncio
async def test_user_ballots(db_session, open_vote, voters, blockchain):
    await VoteService.cast_ballot(db_session, open_vote["vote_id"], "u1", open_vote["a"], blockchain)

    ballots = await VoteService.list_user_ballots(db_session, "u1")

    assert [(b.vote_id, b.option_id) for b in ballots] == [(open_vote["vote_id"], open_vote["a"])]


def test_status_uses_window():
    now = utcnow()
    vote = Vote(title="t", start_at=now - timedelta(hours=1), end_at=now + timedelta(hours=1), active=True)

    assert vote_status(vote, now=now) == VoteStatus.ACTIVE
    assert vote_status(vote, now=now + timedelta(hours=2)) == VoteStatus.CLOSED
    assert vote_status(vote, now=now - timedelta(hours=2)) == VoteStatus.SCHEDULED


def test_vote_window_mixes_naive_and_aware_datetimes():
    now = utcnow()
    naive_start = now.replace(tzinfo=None)

    vote = VoteCreate(title="x", start_at=naive_start, end_at=now + timedelta(days=1), options=["a", "b"])
    assert vote.start_at.tzinfo is not None

    with pytest.raises(SchemaValidationError):
        VoteCreate(title="x", start_at=naive_start, end_at=now - timedelta(days=1), options=["a", "b"])

    assert VoteUpdate(end_at=naive_start).end_at.utcoffset() == timedelta(0)
