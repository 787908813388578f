"""
Nonce management for concurrent transactions.

Allocation is serialized per (chain, address) so that two flows preparing
transactions for the same sender can never be handed the same nonce.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from txflow.core.flow.models import utcnow

from .network import NetworkClient


logger = logging.getLogger(__name__)


@dataclass
class NonceState:
    """Tracks nonce state for an address on a chain."""
    address: str
    chain_id: int
    confirmed_nonce: int                        # Last seen on-chain pending count
    pending_nonce: int                          # Next available for use
    reserved_nonces: Set[int] = field(default_factory=set)
    last_updated: datetime = field(default_factory=utcnow)


class NonceManager:
    """
    Hands out nonces per sender.

    The cached next nonce is used while it is at least the chain's pending
    transaction count; otherwise the chain value wins.
    """

    def __init__(self, network: NetworkClient):
        self.network = network
        self._states: Dict[str, NonceState] = {}  # key: "{chain_id}:{address}"
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_key(self, chain_id: int, address: str) -> str:
        return f"{chain_id}:{address.lower()}"

    def _get_lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get_next_nonce(
        self,
        address: str,
        chain_id: int,
        sync: bool = True,
    ) -> int:
        """
        Reserve and return the next nonce for an address.

        Args:
            address: The sender address
            chain_id: The chain ID
            sync: Whether to compare against the on-chain pending count first
        """
        key = self._get_key(chain_id, address)

        async with self._get_lock(key):
            if key not in self._states or sync:
                on_chain_nonce = await self.network.get_transaction_count(address, "pending")

                if key not in self._states:
                    self._states[key] = NonceState(
                        address=address.lower(),
                        chain_id=chain_id,
                        confirmed_nonce=on_chain_nonce,
                        pending_nonce=on_chain_nonce,
                    )
                else:
                    state = self._states[key]
                    state.confirmed_nonce = on_chain_nonce
                    state.reserved_nonces = {n for n in state.reserved_nonces if n >= on_chain_nonce}
                    if on_chain_nonce > state.pending_nonce:
                        state.pending_nonce = on_chain_nonce
                    state.last_updated = utcnow()

            state = self._states[key]

            nonce = state.pending_nonce
            while nonce in state.reserved_nonces:
                nonce += 1

            state.reserved_nonces.add(nonce)
            state.pending_nonce = nonce + 1

            return nonce

    async def release_nonce(
        self,
        address: str,
        chain_id: int,
        nonce: int,
    ) -> None:
        """Give back a nonce whose transaction was never broadcast."""
        key = self._get_key(chain_id, address)

        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None:
                return
            state.reserved_nonces.discard(nonce)

            # Roll pending back over any trailing released nonces
            if nonce == state.pending_nonce - 1:
                while state.pending_nonce > state.confirmed_nonce:
                    if state.pending_nonce - 1 not in state.reserved_nonces:
                        state.pending_nonce -= 1
                    else:
                        break

    async def confirm_nonce(
        self,
        address: str,
        chain_id: int,
        nonce: int,
    ) -> None:
        """Mark a nonce as mined."""
        key = self._get_key(chain_id, address)

        async with self._get_lock(key):
            state = self._states.get(key)
            if state is None:
                return
            state.reserved_nonces.discard(nonce)
            if nonce >= state.confirmed_nonce:
                state.confirmed_nonce = nonce + 1
            if state.pending_nonce < state.confirmed_nonce:
                state.pending_nonce = state.confirmed_nonce

    async def sync_with_chain(self, address: str, chain_id: int) -> int:
        """Refresh from the chain and return its pending count."""
        key = self._get_key(chain_id, address)

        async with self._get_lock(key):
            on_chain_nonce = await self.network.get_transaction_count(address, "pending")

            state = self._states.get(key)
            if state is None:
                self._states[key] = NonceState(
                    address=address.lower(),
                    chain_id=chain_id,
                    confirmed_nonce=on_chain_nonce,
                    pending_nonce=on_chain_nonce,
                )
            else:
                state.confirmed_nonce = on_chain_nonce
                state.reserved_nonces = {n for n in state.reserved_nonces if n >= on_chain_nonce}
                if on_chain_nonce > state.pending_nonce:
                    state.pending_nonce = on_chain_nonce
                state.last_updated = utcnow()

            return on_chain_nonce

    def get_state(self, address: str, chain_id: int) -> Optional[NonceState]:
        return self._states.get(self._get_key(chain_id, address))

    async def reset(self, address: str, chain_id: Optional[int] = None) -> None:
        """Drop cached state for an address (all chains when chain_id is None)."""
        if chain_id is not None:
            key = self._get_key(chain_id, address)
            async with self._get_lock(key):
                self._states.pop(key, None)
            logger.info(f"Nonce cache reset for {address} on chain {chain_id}")
            return

        suffix = f":{address.lower()}"
        for key in [k for k in self._states if k.endswith(suffix)]:
            async with self._get_lock(key):
                self._states.pop(key, None)
        logger.info(f"Nonce cache reset for {address}")
