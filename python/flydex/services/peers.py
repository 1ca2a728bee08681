"""Peer directory.

Session cache of peer profiles. Peers are immutable once observed; the
cache is filled on first miss and only replaced by an explicit refresh().
"""

from flydex.backend.client import ChatBackendBase
from flydex.errors import ChatError
from flydex.logging import get_logger
from flydex.services.types import Peer

logger = get_logger(__name__)


class PeerDirectory:
    def __init__(self, backend: ChatBackendBase):
        self._backend = backend
        self._peers: dict[str, Peer] = {}

    def peek(self, peer_id: str) -> Peer:
        """Cached peer, or a placeholder carrying only the id."""
        return self._peers.get(peer_id) or Peer(id=peer_id)

    def remember(self, peer: Peer) -> None:
        if not peer.is_placeholder:
            self._peers[peer.id] = peer

    async def get(self, peer_id: str) -> Peer:
        """Cached peer, fetched on first miss.

        Lookup failures return a placeholder and are retried on the next call.
        """
        peer = self._peers.get(peer_id)
        if peer is not None:
            return peer
        try:
            return await self.refresh(peer_id)
        except ChatError as e:
            logger.warning("peer_lookup_failed", lookup_peer_id=peer_id, error_code=e.code.value)
            return Peer(id=peer_id)

    async def refresh(self, peer_id: str) -> Peer:
        """Re-fetch a peer profile and replace the cached copy."""
        peer = await self._backend.fetch_peer(peer_id)
        self.remember(peer)
        return peer

    def search(self, query: str) -> list[Peer]:
        """Cached peers whose display name contains query (case-insensitive)."""
        needle = query.strip().casefold()
        if not needle:
            return []
        matches = [p for p in self._peers.values() if needle in p.display_name.casefold()]
        return sorted(matches, key=lambda p: p.display_name.casefold())
