from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .errors import WriteDisabled
from .logging import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteGuard:
    """
    Global write authority for one client instance.

    The flag is resolved once from settings at construction; it is not
    re-read per call.
    """

    read_only: bool
    source: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "WriteGuard":
        read_only, source = settings.read_only_state()
        return cls(read_only=read_only, source=source)

    def require_writable(self, *, operation: str, context: Mapping[str, Any] | None = None) -> None:
        """
        Must be checked before any write is queued or sent.
        """
        if not self.read_only:
            return
        log_event(
            logger,
            "write.blocked",
            severity="WARNING",
            operation=str(operation),
            reason=self.source or "read_only",
            **dict(context or {}),
        )
        raise WriteDisabled(f"Cannot {operation} in read-only mode ({self.source or 'read_only'})")
