from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from src.api.services.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class AlertFireRecord:
    rule_key: str
    fired_at: float
    cooldown_sec: float

    def expires_at(self) -> float:
        return self.fired_at + self.cooldown_sec


class CooldownGate:
    """
    Last-fired timestamps per rule key; suppresses re-firing inside the cooldown.

    Keys carry their own scoping: ``suspicious_ip:<ip>`` dedups per IP while a bare
    rule name dedups globally.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._records: Dict[str, AlertFireRecord] = {}

    # PUBLIC_INTERFACE
    def try_fire(self, rule_key: str, cooldown_sec: float) -> bool:
        """Record ``now`` and return True unless ``rule_key`` fired less than ``cooldown_sec`` ago."""
        now = self._clock.now()
        last = self._records.get(rule_key)
        if last is not None and (now - last.fired_at) < float(cooldown_sec):
            logger.debug(
                "Alert suppressed due to cooldown key=%s remaining=%.1fs",
                rule_key,
                float(cooldown_sec) - (now - last.fired_at),
            )
            return False
        self._records[rule_key] = AlertFireRecord(rule_key=rule_key, fired_at=now, cooldown_sec=float(cooldown_sec))
        return True

    def active(self) -> List[AlertFireRecord]:
        """Records still inside their cooldown."""
        now = self._clock.now()
        return [r for r in self._records.values() if r.expires_at() > now]

    def last_fired(self) -> List[AlertFireRecord]:
        return sorted(self._records.values(), key=lambda r: r.fired_at, reverse=True)

    # PUBLIC_INTERFACE
    def purge_expired(self) -> int:
        """Drop records whose cooldown has elapsed; they no longer affect try_fire."""
        now = self._clock.now()
        expired = [k for k, r in self._records.items() if r.expires_at() <= now]
        for k in expired:
            del self._records[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
