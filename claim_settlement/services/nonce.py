"""
Nonce allocator for the shared admin signer.

One instance per signer address per process (see get_allocator). Issuance is
serialized by a lock; the network's pending count is only consulted on first
use, after a nonce conflict, or when a cycle starts with nothing in flight.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from claim_settlement.services.chain import NonceAllocationError

logger = logging.getLogger(__name__)


class PendingNonceSource(Protocol):
    signer_address: str

    def get_pending_nonce(self, address: str) -> int: ...


@dataclass
class InFlight:
    nonce: int
    issued_at: datetime
    tx_hash: Optional[str] = None


class NonceAllocator:
    def __init__(self, ledger: PendingNonceSource, address: Optional[str] = None) -> None:
        self.ledger = ledger
        self.address = address or ledger.signer_address
        self._lock = threading.Lock()
        self._next_nonce: Optional[int] = None
        self._in_flight: dict[int, InFlight] = {}

    def _query_pending(self) -> int:
        try:
            return int(self.ledger.get_pending_nonce(self.address))
        except Exception as first:
            logger.warning("Pending nonce lookup failed for %s (%s); retrying once", self.address, first)
            try:
                return int(self.ledger.get_pending_nonce(self.address))
            except Exception as second:
                raise NonceAllocationError(f"could not read pending nonce for {self.address}: {second}") from second

    def allocate(self, refresh: bool = False) -> int:
        """Reserve the next nonce. refresh=True also catches up with the network (after a conflict)."""
        with self._lock:
            if self._next_nonce is None:
                self._next_nonce = self._query_pending()
                logger.info("Nonce allocator seeded for %s at %s", self.address, self._next_nonce)
            elif refresh:
                network = self._query_pending()
                if network > self._next_nonce:
                    logger.info("Nonce allocator advanced %s -> %s from network", self._next_nonce, network)
                    self._next_nonce = network
            while self._next_nonce in self._in_flight:
                self._next_nonce += 1
            nonce = self._next_nonce
            self._next_nonce += 1
            self._in_flight[nonce] = InFlight(nonce=nonce, issued_at=datetime.now(timezone.utc))
            return nonce

    def attach(self, nonce: int, tx_hash: str) -> None:
        with self._lock:
            entry = self._in_flight.get(nonce)
            if entry is not None:
                entry.tx_hash = tx_hash

    def release(self, nonce: int) -> bool:
        with self._lock:
            return self._in_flight.pop(nonce, None) is not None

    def release_tx(self, tx_hash: str) -> Optional[int]:
        """Release whichever nonce carried tx_hash. Returns the nonce, or None if not tracked."""
        wanted = tx_hash.lower()
        with self._lock:
            for nonce, entry in list(self._in_flight.items()):
                if entry.tx_hash and entry.tx_hash.lower() == wanted:
                    del self._in_flight[nonce]
                    return nonce
        return None

    def abandon_stale(self, older_than: timedelta) -> list[int]:
        """Operator escape hatch: drop in-flight entries issued more than older_than ago."""
        cutoff = datetime.now(timezone.utc) - older_than
        with self._lock:
            stale = sorted(n for n, e in self._in_flight.items() if e.issued_at < cutoff)
            for n in stale:
                del self._in_flight[n]
        if stale:
            logger.warning("Abandoned in-flight nonces for %s: %s", self.address, stale)
        return stale

    def resync_if_idle(self) -> bool:
        """Forget the counter when nothing is in flight so the next allocate re-seeds from the network."""
        with self._lock:
            if self._in_flight or self._next_nonce is None:
                return False
            self._next_nonce = None
            return True

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "address": self.address,
                "next_nonce": self._next_nonce,
                "in_flight": [
                    {
                        "nonce": e.nonce,
                        "tx_hash": e.tx_hash,
                        "issued_at": e.issued_at.isoformat(),
                    }
                    for e in sorted(self._in_flight.values(), key=lambda e: e.nonce)
                ],
            }

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)


_registry: dict[str, NonceAllocator] = {}
_registry_lock = threading.Lock()


def get_allocator(ledger: PendingNonceSource) -> NonceAllocator:
    """Process-wide allocator for ledger.signer_address."""
    key = ledger.signer_address.lower()
    with _registry_lock:
        allocator = _registry.get(key)
        if allocator is None:
            allocator = NonceAllocator(ledger)
            _registry[key] = allocator
        return allocator
