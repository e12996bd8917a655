"""CredentialPool — round-robin API credentials with quota failure tracking."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def mask(secret: str) -> str:
    """Loggable form of a credential."""
    return secret[:6] + "..." if len(secret) > 6 else "***"


@dataclass(frozen=True, slots=True)
class Credential:
    index: int
    secret: str

    @property
    def masked(self) -> str:
        return mask(self.secret)


class CredentialPool:
    """Ordered pool of equivalent credentials.

    :meth:`acquire` hands out the next credential not marked failed,
    round-robin from the current position.  :meth:`mark_failed` takes a
    per-credential lock so concurrent callers hitting the same quota
    error record it once.  The pool is meant to be shared process-wide.
    """

    def __init__(self, credentials: Sequence[str]) -> None:
        if not credentials:
            msg = "CredentialPool needs at least one credential"
            raise ValueError(msg)
        self._credentials = tuple(credentials)
        self._index = 0
        self._failed: set[int] = set()
        self._locks = [asyncio.Lock() for _ in self._credentials]
        self._resets = 0

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def failed_count(self) -> int:
        return len(self._failed)

    @property
    def all_failed(self) -> bool:
        return len(self._failed) >= len(self._credentials)

    @property
    def resets(self) -> int:
        return self._resets

    def acquire(self) -> Credential | None:
        """Return the next usable credential, or ``None`` if all are failed."""
        n = len(self._credentials)
        for step in range(n):
            idx = (self._index + step) % n
            if idx not in self._failed:
                self._index = (idx + 1) % n
                return Credential(idx, self._credentials[idx])
        return None

    async def mark_failed(self, credential: Credential) -> bool:
        """Mark *credential* failed.  Returns False if it already was."""
        async with self._locks[credential.index]:
            if credential.index in self._failed:
                return False
            self._failed.add(credential.index)
        logger.warning(
            "Credential %d (%s) hit quota; %d/%d failed",
            credential.index,
            credential.masked,
            len(self._failed),
            len(self._credentials),
        )
        return True

    def reset(self) -> None:
        """Clear all failure marks."""
        if self._failed:
            logger.info("Resetting credential pool (%d failed)", len(self._failed))
        self._failed.clear()
        self._resets += 1
