"""
Set reconciliation between two registries.
"""

import logging
from typing import Iterable, List

from .registry import RegistryClient

logger = logging.getLogger(__name__)

# Selection sentinel meaning "every artifact the source knows about"
ALL = "-all"


def missing_from(destination_ids: Iterable[str], candidate_ids: Iterable[str]) -> List[str]:
    """Candidates not present in the destination, sorted."""
    return sorted(set(candidate_ids) - set(destination_ids))


class Reconciler:
    """
    Computes which artifacts of a source registry a destination lacks.

    Usage:
        reconciler = Reconciler(client, source_url)
        work = await reconciler.missing_from(local_url, "face")
        everything = await reconciler.missing_from(local_url, ALL)
    """

    def __init__(self, client: RegistryClient, source_url: str):
        self.client = client
        self.source_url = source_url

    async def resolve(self, selection: str) -> List[str]:
        """Candidate identifiers for a selection, possibly empty."""
        if selection == ALL:
            ids = await self.client.known_identifiers(self.source_url)
        else:
            ids = await self.client.find(self.source_url, selection)
        return sorted(ids)

    async def missing_from(self, destination_url: str, selection: str) -> List[str]:
        candidates = await self.resolve(selection)
        if not candidates:
            return []

        destination = await self.client.known_identifiers(destination_url)
        missing = missing_from(destination, candidates)

        logger.debug(
            f"{selection}: {len(candidates)} candidate(s), {len(missing)} missing from {destination_url}"
        )
        return missing
