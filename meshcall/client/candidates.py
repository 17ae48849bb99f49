import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

Candidate = Dict[str, Any]


class CandidateQueue:
    """ICE candidates received before their link has a remote description.

    Buffered per remote connection id, in arrival order.
    """

    def __init__(self):
        self._pending: Dict[str, List[Candidate]] = {}

    def push(self, remote_id: str, candidate: Candidate):
        self._pending.setdefault(remote_id, []).append(candidate)
        logger.debug(f"Buffered ICE candidate for {remote_id} ({len(self._pending[remote_id])} queued)")

    def pending(self, remote_id: str) -> List[Candidate]:
        return list(self._pending.get(remote_id, []))

    def has_pending(self, remote_id: str) -> bool:
        return bool(self._pending.get(remote_id))

    def take(self, remote_id: str) -> List[Candidate]:
        return self._pending.pop(remote_id, [])

    def discard(self, remote_id: str):
        dropped = self._pending.pop(remote_id, None)
        if dropped:
            logger.debug(f"Dropped {len(dropped)} queued ICE candidate(s) for {remote_id}")

    def __contains__(self, remote_id: str) -> bool:
        return remote_id in self._pending

    async def flush(
        self,
        remote_id: str,
        apply: Callable[[Candidate], Awaitable[None]],
        is_alive: Callable[[], bool],
    ) -> int:
        """Apply queued candidates in arrival order; returns how many were applied.

        Candidates that arrive while flushing are picked up by the same flush.
        Once ``is_alive`` turns false the rest are dropped.
        """
        applied = 0
        while self.has_pending(remote_id):
            for candidate in self.take(remote_id):
                if not is_alive():
                    self.discard(remote_id)
                    return applied
                try:
                    await apply(candidate)
                    applied += 1
                except Exception as e:
                    logger.warning(f"Discarding ICE candidate for {remote_id}: {e}")
        return applied
