"""
Exclusion set management.
"""

from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

import structlog

from miko_keeper.core.config import TOKEN_2022_PROGRAM, TOKEN_PROGRAM
from miko_keeper.services.interfaces import ExclusionSource


logger = structlog.get_logger(__name__)

JUPITER_V6_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
RAYDIUM_CPMM_PROGRAM = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"

KNOWN_PROGRAMS = frozenset({
    TOKEN_PROGRAM,
    TOKEN_2022_PROGRAM,
    JUPITER_V6_PROGRAM,
    RAYDIUM_CPMM_PROGRAM,
})


class ExclusionManager:
    """
    Addresses removed from reward eligibility.

    The set is the union of configured addresses, the keeper's own system
    accounts and whatever the dynamic sources (pool detection, vault
    exclusion list) report. A source that fails keeps its last known
    result so a detection outage never re-admits a pool.
    """

    def __init__(
        self,
        static_addresses: Iterable[str] = (),
        system_addresses: Iterable[str] = (),
        sources: Optional[List[ExclusionSource]] = None,
        program_lookup: Optional[Callable[[Sequence[str]], Awaitable[Set[str]]]] = None,
    ):
        self.static_addresses: Set[str] = {a for a in static_addresses if a} | set(KNOWN_PROGRAMS)
        self.system_addresses: Set[str] = {a for a in system_addresses if a}
        self.sources = sources or []
        self._source_cache: Dict[int, Set[str]] = {}
        self.program_lookup = program_lookup
        self.programs: Set[str] = set()
        self._program_checked: Set[str] = set()
        self.current: Set[str] = self.static_addresses | self.system_addresses
        self.logger = logger.bind(service="exclusion_manager")

    async def refresh(self, token_id: str) -> Set[str]:
        """Rebuild the exclusion set; called right before every plan."""
        detected: Set[str] = set()
        for index, source in enumerate(self.sources):
            try:
                found = await source.fetch_exclusions(token_id)
                self._source_cache[index] = set(found)
            except Exception as e:
                self.logger.warning(
                    "Exclusion source failed, keeping last known set",
                    source=type(source).__name__,
                    cached=len(self._source_cache.get(index, ())),
                    error=str(e),
                )
            detected |= self._source_cache.get(index, set())

        previous = self.current
        self.current = self.static_addresses | self.system_addresses | detected

        added = self.current - previous
        if added:
            self.logger.info("New exclusions detected", added=sorted(added))
        self.logger.debug("Exclusion set refreshed", size=len(self.current))
        return set(self.current)

    async def program_owned(self, addresses: Sequence[str]) -> Set[str]:
        """
        Addresses that are executable program accounts.

        Results are cached; a failed lookup leaves unchecked addresses to the
        next call.
        """
        if self.program_lookup is None:
            return set()

        unchecked = sorted(set(addresses) - self._program_checked)
        if unchecked:
            try:
                found = await self.program_lookup(unchecked)
            except Exception as e:
                self.logger.warning("Program owner lookup failed", addresses=len(unchecked), error=str(e))
            else:
                self._program_checked.update(unchecked)
                if found:
                    self.logger.info("Program-owned holders detected", programs=sorted(found))
                self.programs |= set(found)

        return {address for address in addresses if address in self.programs}

    def is_excluded(self, address: str) -> bool:
        return address in self.current

    def status(self) -> dict:
        return {
            "excluded_count": len(self.current),
            "dynamic_count": len(set().union(*self._source_cache.values())) if self._source_cache else 0,
        }
