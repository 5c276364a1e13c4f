"""
Listing Source for ListLoop.

Read-only view of marketplace listings and the items they were created
from. Listing/item persistence lives outside the learning loop; the
recorder only needs the two lookups defined by ListingReader.

Usage:
    reader = InMemoryListingReader()
    reader.add_item(ItemSnapshot(id="item-1", organization_id="org-1"))
    reader.add_listing(ListingSnapshot(id="lst-1", item_id="item-1"))
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass
class ListingSnapshot:
    """Marketplace listing as seen at sale time."""

    id: str
    item_id: str
    created_at: datetime | None = None
    price: float | None = None
    marketplace: str | None = None


@dataclass
class ItemSnapshot:
    """
    Item with its canonical research snapshot.

    The price bands, category and identification fields are what the
    research pipeline predicted before the item was listed.
    """

    id: str
    organization_id: str | None
    research_run_id: str | None = None
    price_floor: float | None = None
    price_target: float | None = None
    price_ceiling: float | None = None
    category: str | None = None
    brand: str | None = None
    model: str | None = None
    research_confidence: float | None = None


@runtime_checkable
class ListingReader(Protocol):
    """Lookup contract for listings and items."""

    async def get_listing(self, listing_id: str) -> ListingSnapshot | None: ...

    async def get_item(self, item_id: str) -> ItemSnapshot | None: ...


class InMemoryListingReader:
    """Dict-backed ListingReader for local runs and tests."""

    def __init__(
        self,
        listings: dict[str, ListingSnapshot] | None = None,
        items: dict[str, ItemSnapshot] | None = None,
    ) -> None:
        self._listings: dict[str, ListingSnapshot] = dict(listings or {})
        self._items: dict[str, ItemSnapshot] = dict(items or {})

    def add_listing(self, listing: ListingSnapshot) -> None:
        self._listings[listing.id] = listing

    def add_item(self, item: ItemSnapshot) -> None:
        self._items[item.id] = item

    async def get_listing(self, listing_id: str) -> ListingSnapshot | None:
        return self._listings.get(listing_id)

    async def get_item(self, item_id: str) -> ItemSnapshot | None:
        return self._items.get(item_id)


__all__ = [
    "ListingSnapshot",
    "ItemSnapshot",
    "ListingReader",
    "InMemoryListingReader",
]
