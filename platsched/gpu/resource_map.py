"""Per-card resource amounts with 64-bit overflow checks."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)

INT64_MAX = 2**63 - 1
MIN_ALLOWED_INPUT = 0


class ResourceError(Exception):
    """Resource arithmetic failed."""


class ResourceOverflowError(ResourceError):
    """A resource amount would exceed the 64-bit range."""


class ResourceInputError(ResourceError, ValueError):
    """A resource operation got an unusable argument."""


class ResourceMap(dict):
    """Resource name to amount. Amounts are assumed non-negative."""

    def copy(self) -> ResourceMap:
        return ResourceMap(self)

    def add(self, key: str, value: int) -> None:
        """Add ``value`` to ``key``; the map is unchanged on error."""
        if value < MIN_ALLOWED_INPUT:
            log.error("bad input for add, key: %s", key)
            raise ResourceInputError(f"negative amount for {key}")
        if key in self:
            value += self[key]
            if value > INT64_MAX:
                log.error("overflow during add, key: %s", key)
                raise ResourceOverflowError(f"integer overflow for {key}")
        self[key] = value

    def subtract(self, key: str, value: int) -> None:
        """Subtract ``value`` from an existing ``key``, capping the result at zero."""
        if value < MIN_ALLOWED_INPUT:
            log.error("bad input for subtract, key: %s", key)
            raise ResourceInputError(f"negative amount for {key}")
        if key not in self:
            log.error("subtract attempted with non-existing key: %s", key)
            raise ResourceInputError(f"unknown resource {key}")
        remaining = self[key] - value
        if remaining < 0:
            log.warning("resource value for %s ended negative, capped to zero", key)
            remaining = 0
        self[key] = remaining

    def add_rm(self, src: dict) -> None:
        """Add every amount of ``src``; nothing changes if any addition fails."""
        trial = self.copy()
        for key, value in src.items():
            trial.add(key, value)
        self.update(trial)

    def subtract_rm(self, src: dict) -> None:
        """Subtract every amount of ``src``; nothing changes if any subtraction fails."""
        trial = self.copy()
        for key, value in src.items():
            trial.subtract(key, value)
        self.update(trial)

    def divide(self, divider: int) -> None:
        """Divide every amount by ``divider``, truncating toward zero."""
        if divider < 1:
            log.error("bad divider")
            raise ResourceInputError(f"bad divider {divider}")
        if divider == 1:
            return
        for key, value in self.items():
            quotient = abs(value) // divider
            self[key] = quotient if value >= 0 else -quotient