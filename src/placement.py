"""Placement of new disks and VMs.

The API leaves placement to the client: before creating a VM or disk we
pick the storage bin that will hold the disk and the resource pool that will
host the VM. Both selections list candidates for a site, filter, then choose.
"""

import logging
import math
from typing import Optional

from errors import PlacementExhausted
from models import ResourcePool, StorageCandidate, first
from transport import Transport

logger = logging.getLogger(__name__)


def storage_ratio(candidate: StorageCandidate) -> int:
    """Capacity-to-free ratio as a rounded percentage.

    The ratio is total/free (not free/total), so the highest value belongs
    to the proportionally fullest candidate. Rounds half up.
    """
    return int(math.floor(candidate.capacity_kb / candidate.free_kb * 100 + 0.5))


def choose_storage(candidates: list[StorageCandidate], required_kb: int) -> Optional[str]:
    """Pick a storage id from listed candidates, or None if none qualify.

    Candidates need free >= required (and some free space at all). A single
    qualifier wins outright; otherwise the highest storage_ratio wins, the
    first in listing order on ties.
    """
    qualifying = [c for c in candidates if c.free_kb > 0 and c.free_kb >= required_kb]
    if not qualifying:
        return None
    if len(qualifying) == 1:
        return qualifying[0].storage_id

    best = qualifying[0]
    best_ratio = storage_ratio(best)
    for candidate in qualifying[1:]:
        ratio = storage_ratio(candidate)
        if ratio > best_ratio:
            best, best_ratio = candidate, ratio
    return best.storage_id


def choose_pool(pools: list[ResourcePool]) -> Optional[str]:
    """First pool already hosting VMs, else the first pool listed."""
    if not pools:
        return None
    for pool in pools:
        if pool.in_use:
            return pool.pool_id
    return pools[0].pool_id


class PlacementSelector:
    """Chooses storage and resource pools for new resources."""

    def __init__(self, transport: Transport):
        self.transport = transport

    def list_storage(self, site_id: str, pool_id: Optional[str] = None) -> list[StorageCandidate]:
        """List storage for a site, optionally limited to a pool's hypervisor."""
        query = f"IsRemoved eq false and Hypervisor/Site/SiteID eq '{site_id}'"
        if pool_id:
            hypervisor_id = self._pool_hypervisor(pool_id)
            if hypervisor_id:
                query += f" and Hypervisor/HypervisorID eq '{hypervisor_id}'"
        data = self.transport.get_json(f"/Storage?$filter={query}") or []
        return [StorageCandidate.from_dict(item) for item in data]

    def list_pools(self, site_id: str) -> list[ResourcePool]:
        query = f"IsRemoved eq false and Hypervisor/Site/SiteID eq '{site_id}'"
        data = self.transport.get_json(f"/ResourcePool?$filter={query}") or []
        return [ResourcePool.from_dict(item) for item in data]

    def _pool_hypervisor(self, pool_id: str) -> Optional[str]:
        data = first(self.transport.get_json(f"/ResourcePool/{pool_id}?$filter=IsRemoved eq false"))
        if not data:
            logger.warning(f"Resource pool {pool_id} not found, placing by site only")
            return None
        return ResourcePool.from_dict(data).hypervisor_id

    def select_storage(self, required_kb: int, site_id: str, pool_id: Optional[str] = None) -> str:
        """Choose the storage that will hold a disk of required_kb.

        Raises:
            PlacementExhausted: No storage in the site has enough free space
        """
        candidates = self.list_storage(site_id, pool_id)
        storage_id = choose_storage(candidates, required_kb)
        if storage_id is None:
            logger.error(f"No available storage in site {site_id} - require {required_kb}KB")
            raise PlacementExhausted(f"No available storage in site {site_id} - require {required_kb}KB")
        logger.debug(f"Selected storage {storage_id} for {required_kb}KB in site {site_id}")
        return storage_id

    def select_pool(self, site_id: str) -> str:
        """Choose the resource pool that will host a VM.

        Raises:
            PlacementExhausted: Site has no resource pools
        """
        pool_id = choose_pool(self.list_pools(site_id))
        if pool_id is None:
            logger.error(f"No available resource pool in site {site_id}")
            raise PlacementExhausted(f"No available resource pool in site {site_id}")
        logger.debug(f"Selected resource pool {pool_id} in site {site_id}")
        return pool_id
