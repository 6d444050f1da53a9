"""
Centralized Test Configuration.
"""

import itertools
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool, Pool

from fiatmint.app.main import app
from fiatmint.app.core.exceptions import ExternalServiceError
from fiatmint.app.core.jwt import create_access_token
from fiatmint.app.db.session import get_db, Base, utcnow
from fiatmint.app.domain.minting.mint_coordinator import MintCoordinator
from fiatmint.app.domain.minting.outbox import OutboxDispatcher
from fiatmint.app.domain.tokens.token_service import TokenService
from fiatmint.app.models.order import Order
from fiatmint.app.models.order_enums import OrderStatus
from fiatmint.app.models.perk import Perk
from fiatmint.app.models.perk_enums import PerkType
from fiatmint.app.models.product import Product
from fiatmint.app.models.user import User
from fiatmint.app.models.vote import Vote, VoteOption

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


class FakeBlockchainClient:
    """
    In-memory stand-in for the token contract.

    ``fail_with`` makes the next submit raise that exception instead.
    """

    def __init__(self):
        self.balances = {}
        self.minted = []
        self.transfers = []
        self.fail_with = None
        self.balance_error = None
        self._counter = itertools.count(1)

    def _next_hash(self) -> str:
        return "0x" + format(next(self._counter), "064x")

    async def submit_mint(self, to, amount):
        if self.fail_with is not None:
            raise self.fail_with
        tx_hash = self._next_hash()
        self.minted.append((to, Decimal(amount), tx_hash))
        self.balances[to] = self.balances.get(to, Decimal("0")) + Decimal(amount)
        return tx_hash

    async def get_balance(self, address):
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address, Decimal("0"))

    async def submit_transfer(self, from_address, to, amount):
        if self.fail_with is not None:
            raise self.fail_with
        tx_hash = self._next_hash()
        self.transfers.append((from_address, to, Decimal(amount), tx_hash))
        self.balances[from_address] = self.balances.get(from_address, Decimal("0")) - Decimal(amount)
        self.balances[to] = self.balances.get(to, Decimal("0")) + Decimal(amount)
        return tx_hash

    async def get_token_info(self):
        return {
            "name": "Fan Token",
            "symbol": "FAN",
            "decimals": 18,
            "total_supply": sum((amount for _, amount, _ in self.minted), Decimal("0")),
        }


class FakePaymentGateway:
    def __init__(self):
        self.sessions = []
        self.fail = False

    async def create_checkout(self, order_id, amount, currency, description="", metadata=None):
        if self.fail:
            raise ExternalServiceError("payment_gateway", "Could not create checkout session")
        self.sessions.append({"order_id": order_id, "amount": amount, "currency": currency})
        return f"https://checkout.test/{order_id}"


@pytest.fixture(scope="session", autouse=True)
def apply_overrides():
    """Apply the database override once for the session."""

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def blockchain():
    return FakeBlockchainClient()


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def coordinator(blockchain):
    return MintCoordinator(blockchain, chain_id=137, timeout_seconds=1, stale_after_seconds=600)


@pytest.fixture
def dispatcher(coordinator):
    return OutboxDispatcher(coordinator, batch_size=10)


@pytest.fixture
def token_service(blockchain):
    return TokenService(blockchain, timeout_seconds=1)


@pytest.fixture(autouse=True)
def app_services(blockchain, gateway, coordinator, dispatcher, token_service):
    """Attach the fakes where the lifespan would attach the real clients."""
    app.state.blockchain = blockchain
    app.state.payment_gateway = gateway
    app.state.mint_coordinator = coordinator
    app.state.outbox_dispatcher = dispatcher
    app.state.token_service = token_service
    yield


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# Data helpers

@pytest.fixture
async def member(db_session):
    user = User(id="user-1", email="member@example.com", wallet_address=WALLET)
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def product(db_session):
    bundle = Product(name="Starter Pack", token_amount=Decimal("100"), price_eur=Decimal("50.00"))
    db_session.add(bundle)
    await db_session.commit()
    return bundle


@pytest.fixture
async def pending_order(db_session, member, product):
    order = Order(user_id=member.id, product_id=product.id, status=OrderStatus.PENDING)
    db_session.add(order)
    await db_session.commit()
    return order


@pytest.fixture
async def perk(db_session):
    item = Perk(name="Backstage Pass", description="Meet the team", token_cost=Decimal("30"), perk_type=PerkType.EXPERIENCE)
    db_session.add(item)
    await db_session.commit()
    return item


@pytest.fixture
async def open_vote(db_session):
    now = utcnow()
    vote = Vote(title="Next venue", start_at=now - timedelta(hours=1), end_at=now + timedelta(days=1))
    db_session.add(vote)
    await db_session.flush()
    option_a = VoteOption(vote_id=vote.id, label="Berlin", created_at=now - timedelta(minutes=2))
    option_b = VoteOption(vote_id=vote.id, label="Lisbon", created_at=now - timedelta(minutes=1))
    db_session.add_all([option_a, option_b])
    await db_session.commit()
    return {"vote_id": vote.id, "a": option_a.id, "b": option_b.id}


def make_token(user_id="user-1", roles=("MEMBER",), wallet_address=WALLET, **extra) -> str:
    claims = {"sub": user_id, "user_id": user_id, "roles": list(roles)}
    if wallet_address:
        claims["wallet_address"] = wallet_address
    claims.update(extra)
    return create_access_token(claims)


def auth_headers(user_id="user-1", roles=("MEMBER",), wallet_address=WALLET) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, roles, wallet_address)}"}


@pytest.fixture
def auth():
    """Build bearer headers: auth(user_id, roles=..., wallet_address=...)."""
    return auth_headers
