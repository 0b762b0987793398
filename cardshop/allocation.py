"""
Allocation policies: how many inventory units a paid quantity turns into.

    exclusive  one distinct unit per purchased unit
    shared     the same unit for everybody, nothing is depleted
    bundle     bundle_size distinct units per purchased unit

Exclusive and bundle claims stop at the first empty claim; whatever was
obtained by then is returned with short=True. Nothing is retried or
refunded here.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List

from .model.db import Product, EXCLUSIVE, SHARED, BUNDLE
from .model.inventory import InventoryStore, reservation_tag


@dataclass
class AllocationResult:
    units: List[str] = field(default_factory=list)
    short: bool = False
    # inventory references the policy tried to hand out
    expected: int = 0
    # True when the units were claimed (reserved) and must be finished
    # off as sold or released; False for shared references
    claimed: bool = True

    @property
    def shortfall(self) -> int:
        return max(0, self.expected - len(self.units))


class AllocationPolicy(ABC):
    mode: str

    def __init__(self, inventory: InventoryStore) -> None:
        self.inventory = inventory

    @abstractmethod
    async def allocate(self, product: Product, quantity: int,
                       token: str) -> AllocationResult: ...

    async def _claim(self, product: Product, needed: int,
                     token: str) -> AllocationResult:
        units: List[str] = []
        for n in range(needed):
            unit_id = await self.inventory.claim_one(
                product.id, reservation_tag(token, n)
            )
            if unit_id is None:
                break
            units.append(unit_id)
        return AllocationResult(
            units=units, short=len(units) < needed, expected=needed
        )


class ExclusivePolicy(AllocationPolicy):
    mode = EXCLUSIVE

    async def allocate(self, product, quantity, token):
        return await self._claim(product, quantity, token)


class BundlePolicy(AllocationPolicy):
    # quantity -> bundle_size units each; that mapping is not persisted
    # beyond the claimed unit list
    mode = BUNDLE

    async def allocate(self, product, quantity, token):
        size = max(1, int(product.bundle_size or 1))
        return await self._claim(product, quantity * size, token)


class SharedPolicy(AllocationPolicy):
    mode = SHARED

    async def allocate(self, product, quantity, token):
        unit_id = await self.inventory.peek_shared_unit(product.id)
        if unit_id is None:
            return AllocationResult(
                units=[], short=True, expected=quantity, claimed=False
            )
        return AllocationResult(
            units=[unit_id] * quantity, short=False, expected=quantity,
            claimed=False,
        )


POLICIES: Dict[str, type] = {
    EXCLUSIVE: ExclusivePolicy,
    SHARED: SharedPolicy,
    BUNDLE: BundlePolicy,
}


def policy_for(mode: str, inventory: InventoryStore) -> AllocationPolicy:
    try:
        return POLICIES[mode](inventory)
    except KeyError:
        raise ValueError(f"unknown allocation mode {mode!r}")


async def allocate(inventory: InventoryStore, product: Product,
                   quantity: int, token: str) -> AllocationResult:
    return await policy_for(product.allocation_mode, inventory).allocate(
        product, quantity, token
    )
