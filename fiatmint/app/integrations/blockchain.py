"""
Blockchain client.

Idempotent command interface to the ERC-20 token contract. Every failure is
reported as one of three outcomes the mint coordinator acts on:

- BlockchainUnavailable: nothing was broadcast, safe to retry
- BlockchainRejected: the chain refused the transaction, terminal
- BlockchainTimeout: broadcast may have happened, outcome unknown
"""

import asyncio
import logging
from decimal import Decimal
from typing import Optional, Protocol

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3RPCError
from web3.providers.rpc import AsyncHTTPProvider

from fiatmint.app.core.reliability import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)


class BlockchainError(Exception):
    """Base class for blockchain client failures."""


class BlockchainUnavailable(BlockchainError):
    """Node unreachable or circuit open before anything was broadcast."""


class BlockchainRejected(BlockchainError):
    """Transaction refused by the node or reverted on chain."""


class BlockchainTimeout(BlockchainError):
    """No receipt within the deadline; the transaction may still land."""


class BlockchainClient(Protocol):
    async def submit_mint(self, to: str, amount: Decimal) -> str: ...

    async def get_balance(self, address: str) -> Decimal: ...

    async def submit_transfer(self, from_address: str, to: str, amount: Decimal) -> str: ...

    async def get_token_info(self) -> dict: ...


ERC20_MINTABLE_ABI = [
    {"name": "name", "type": "function", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "string"}]},
    {"name": "symbol", "type": "function", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "string"}]},
    {"name": "decimals", "type": "function", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "totalSupply", "type": "function", "stateMutability": "view", "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {
        "name": "mintTo",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "transferFrom",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

# Failures that mean the node could not be reached.
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)

# Node replies meaning an identical or competing transaction may already be pending.
AMBIGUOUS_BROADCAST_ERRORS = ("already known", "nonce too low")


async def read_balance(client: BlockchainClient, address: str, timeout: float) -> Decimal:
    """Balance lookup bounded by ``timeout``; a stuck node counts as unavailable."""
    try:
        return await asyncio.wait_for(client.get_balance(address), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise BlockchainUnavailable(f"No balance for {address} within {timeout}s") from exc


class Web3BlockchainClient:
    """
    web3.py client for an ERC-20 contract exposing ``mintTo``.

    The signing account and contract are created on first use so the
    application can start without chain credentials (read paths and tests).
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: Optional[str],
        private_key: Optional[str],
        chain_id: int,
        decimals: int = 18,
        receipt_timeout: float = 60.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.contract_address = contract_address
        self.private_key = private_key
        self.chain_id = chain_id
        self.decimals = decimals
        self.receipt_timeout = receipt_timeout
        self.breaker = breaker or CircuitBreaker(expected_exceptions=NETWORK_ERRORS, name="blockchain")
        self._account = None
        self._contract = None

    # Conversions

    def to_base_units(self, amount: Decimal) -> int:
        return int(Decimal(amount).scaleb(self.decimals))

    def from_base_units(self, raw: int) -> Decimal:
        return Decimal(raw).scaleb(-self.decimals)

    # Lazy setup

    @property
    def account(self):
        if self._account is None:
            if not self.private_key:
                raise BlockchainUnavailable("No signing key configured")
            self._account = Account.from_key(self.private_key)
        return self._account

    @property
    def contract(self):
        if self._contract is None:
            if not self.contract_address:
                raise BlockchainUnavailable("No token contract configured")
            self._contract = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.contract_address),
                abi=ERC20_MINTABLE_ABI,
            )
        return self._contract

    async def _guarded(self, func, *args):
        """Run a pre-broadcast call through the circuit breaker."""
        try:
            return await self.breaker.call(func, *args)
        except CircuitOpenError as exc:
            raise BlockchainUnavailable(str(exc)) from exc
        except NETWORK_ERRORS as exc:
            raise BlockchainUnavailable(f"Node unreachable: {exc}") from exc

    # Commands

    async def submit_mint(self, to: str, amount: Decimal) -> str:
        function = self.contract.functions.mintTo(Web3.to_checksum_address(to), self.to_base_units(amount))
        return await self._send(function, action="mint")

    async def submit_transfer(self, from_address: str, to: str, amount: Decimal) -> str:
        function = self.contract.functions.transferFrom(
            Web3.to_checksum_address(from_address),
            Web3.to_checksum_address(to),
            self.to_base_units(amount),
        )
        return await self._send(function, action="transfer")

    async def get_balance(self, address: str) -> Decimal:
        checksum = Web3.to_checksum_address(address)
        raw = await self._guarded(self.contract.functions.balanceOf(checksum).call)
        return self.from_base_units(raw)

    async def get_token_info(self) -> dict:
        functions = self.contract.functions
        name = await self._guarded(functions.name().call)
        symbol = await self._guarded(functions.symbol().call)
        decimals = await self._guarded(functions.decimals().call)
        total_supply = await self._guarded(functions.totalSupply().call)
        return {
            "name": name,
            "symbol": symbol,
            "decimals": decimals,
            "total_supply": Decimal(total_supply).scaleb(-decimals),
        }

    async def _build(self, function) -> bytes:
        sender = self.account.address
        try:
            tx = await function.build_transaction({
                "from": sender,
                "chainId": self.chain_id,
                "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
            })
        except (ContractLogicError, Web3RPCError) as exc:
            # Gas estimation already reverts for calls the contract refuses.
            raise BlockchainRejected(str(exc)) from exc
        return self.account.sign_transaction(tx).raw_transaction

    async def _send(self, function, action: str) -> str:
        raw_transaction = await self._guarded(self._build, function)

        try:
            tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        except Web3RPCError as exc:
            if any(marker in str(exc).lower() for marker in AMBIGUOUS_BROADCAST_ERRORS):
                raise BlockchainTimeout(f"Broadcast outcome unknown: {exc}") from exc
            raise BlockchainRejected(str(exc)) from exc
        except aiohttp.ClientConnectorError as exc:
            raise BlockchainUnavailable(f"Node unreachable: {exc}") from exc
        except NETWORK_ERRORS as exc:
            raise BlockchainTimeout(f"Broadcast outcome unknown: {exc}") from exc

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("Transaction broadcast", extra={"action": action, "tx_hash": tx_hex})

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as exc:
            raise BlockchainTimeout(f"No receipt for {tx_hex}") from exc
        except NETWORK_ERRORS as exc:
            raise BlockchainTimeout(f"Lost node while waiting for {tx_hex}: {exc}") from exc

        if receipt["status"] != 1:
            raise BlockchainRejected(f"Transaction {tx_hex} reverted")
        return tx_hex
