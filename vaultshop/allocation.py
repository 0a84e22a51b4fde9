from __future__ import annotations
import logging
from typing import Optional

from .errors import ConflictError, OutOfStock, UnitUnavailable
from .infra.sql import transaction
from .infra.timings import timeit
from .model.inventory import AVAILABLE, InventoryRepository, UnitRecord

log = logging.getLogger(__name__)

# claim_one() can come back empty while units are still available when
# every remaining row is locked by a concurrent claimer (SKIP LOCKED);
# attempts after the first wait on those locks instead
CLAIM_ATTEMPTS = 3


class Allocator:
    """
    Binds exactly one inventory unit to an order.

    Runs inside the caller's transaction when there is one, so the claim
    commits or rolls back together with the order's status transition.
    """

    def __init__(self, inventory: InventoryRepository) -> None:
        self.inventory = inventory

    async def allocate(
        self, product_id: str, order_id: str, customer: Optional[str] = None
    ) -> UnitRecord:
        """
        Claim one available unit of `product_id` for `order_id`.

        Re-invoking for an order that already holds a unit returns that
        unit unchanged. Raises OutOfStock when nothing is left and
        ConflictError when a concurrent claim for the same order won.
        """
        async with timeit("allocation.allocate"):
            async with transaction(self.inventory.db):
                bound = await self.inventory.find_by_order(order_id)
                if bound is not None:
                    if bound.product_id != product_id:
                        log.warning(
                            "order %s already holds unit %s of product %s, "
                            "not %s", order_id, bound.id, bound.product_id,
                            product_id,
                        )
                    return bound

                for attempt in range(CLAIM_ATTEMPTS):
                    unit = await self.inventory.claim_one(
                        product_id, order_id, customer,
                        skip_locked=attempt == 0,
                    )
                    if unit is not None:
                        log.info("allocated unit %s of %s to order %s",
                                 unit.id, product_id, order_id)
                        return unit
                    left = await self.inventory.count_available(product_id)
                    if left == 0:
                        break
                    log.debug("claim miss %d for %s with %d left",
                              attempt + 1, product_id, left)

        raise OutOfStock(product_id)

    async def allocate_specific(
        self,
        unit_id: int,
        product_id: str,
        order_id: str,
        customer: Optional[str] = None,
    ) -> UnitRecord:
        """Manual completion: bind the unit an operator picked."""
        async with timeit("allocation.allocate_specific"):
            async with transaction(self.inventory.db):
                bound = await self.inventory.find_by_order(order_id)
                if bound is not None:
                    if bound.id == unit_id:
                        return bound
                    raise ConflictError(order_id)

                unit = await self.inventory.claim_specific(
                    unit_id, product_id, order_id, customer
                )
                if unit is not None:
                    log.info("allocated unit %s of %s to order %s (manual)",
                             unit.id, product_id, order_id)
                    return unit

                current = await self.inventory.get_unit(unit_id)
                if current is None:
                    raise UnitUnavailable(unit_id, "unknown unit")
                if current.product_id != product_id:
                    raise UnitUnavailable(
                        unit_id, f"belongs to product {current.product_id}"
                    )
                if current.status != AVAILABLE:
                    raise UnitUnavailable(unit_id, f"status {current.status}")
                # lost a race for this exact row
                raise UnitUnavailable(unit_id, "claimed concurrently")
