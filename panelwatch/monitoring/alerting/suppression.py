"""
PanelWatch Suppression Registry

Time-boxed manual mutes keyed by rule name.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

import structlog

from panelwatch.monitoring.types import Suppression, utcnow

logger = structlog.get_logger(__name__)


class SuppressionRegistry:
    """Tracks which rules are muted and until when."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._suppressions: Dict[str, Suppression] = {}

    def suppress(
        self,
        rule_name: str,
        duration: timedelta = timedelta(hours=1),
        reason: str = "Manual suppression",
    ) -> Suppression:
        """Mute a rule until ``now + duration``, replacing any existing entry."""
        now = self.clock()
        suppression = Suppression(
            rule_name=rule_name,
            expires_at=now + duration,
            reason=reason,
            created_at=now,
        )
        self._suppressions[rule_name] = suppression

        logger.info(
            f"Suppressed rule: {rule_name}",
            expires_at=suppression.expires_at.isoformat(),
            reason=reason,
        )
        return suppression

    def unsuppress(self, rule_name: str) -> bool:
        if self._suppressions.pop(rule_name, None) is None:
            return False
        logger.info(f"Unsuppressed rule: {rule_name}")
        return True

    def is_suppressed(self, rule_name: str) -> bool:
        """True strictly before expiry; expired entries are evicted."""
        suppression = self._suppressions.get(rule_name)
        if suppression is None:
            return False

        if suppression.is_expired(self.clock()):
            del self._suppressions[rule_name]
            return False
        return True

    def active(self) -> List[Suppression]:
        now = self.clock()
        return [s for s in self._suppressions.values() if not s.is_expired(now)]

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [name for name, s in self._suppressions.items() if s.is_expired(now)]
        for name in expired:
            del self._suppressions[name]
        return len(expired)

    def __len__(self) -> int:
        return len(self._suppressions)

    # === Persistence ===

    def to_dict(self) -> Dict[str, Any]:
        return {name: s.to_dict() for name, s in self._suppressions.items()}

    def load(self, data: Dict[str, Any]) -> None:
        for name, entry in data.items():
            self._suppressions[name] = Suppression.from_dict(entry)
        self.cleanup_expired()
