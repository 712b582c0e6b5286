"""Payload variants carried by fulfillment queue items.

Quantity purchases and site purchases share one queue table and all of the
claim/retry/reap machinery; they differ only in what the downstream
subscription and license carry. Each variant knows how to build the
provider metadata and the license fields for its job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from fulfillq.db.models.base import PurchaseKind

if TYPE_CHECKING:
    from fulfillq.db.models.queue import QueueItem


@dataclass(frozen=True)
class QuantityPayload:
    """One license out of a quantity purchase."""

    price_id: str
    license_key: str
    quantity: int = 1
    trial_end: int | None = None

    kind = PurchaseKind.QUANTITY

    def subscription_metadata(self, queue_id: str, license_key: str) -> dict[str, str]:
        return {
            "purchase_type": self.kind.value,
            "license_key": license_key,
            "queue_id": queue_id,
        }

    def license_fields(self) -> dict[str, Any]:
        return {"purchase_type": self.kind.value, "site_domain": None}


@dataclass(frozen=True)
class SitePayload:
    """One license bound to a site domain."""

    price_id: str
    license_key: str
    site_domain: str
    quantity: int = 1
    trial_end: int | None = None

    kind = PurchaseKind.SITE

    def subscription_metadata(self, queue_id: str, license_key: str) -> dict[str, str]:
        return {
            "purchase_type": self.kind.value,
            "license_key": license_key,
            "queue_id": queue_id,
            "site": self.site_domain,
        }

    def license_fields(self) -> dict[str, Any]:
        return {"purchase_type": self.kind.value, "site_domain": self.site_domain}


Payload = QuantityPayload | SitePayload


def payload_from_item(item: QueueItem) -> Payload:
    """Rebuild the typed payload stored on a queue row.

    Raises:
        ValueError: If a site row has no site_domain.
    """
    if item.kind == PurchaseKind.SITE:
        if not item.site_domain:
            msg = f"Site queue item {item.queue_id} has no site_domain"
            raise ValueError(msg)
        return SitePayload(
            price_id=item.price_id,
            license_key=item.license_key,
            site_domain=item.site_domain,
            quantity=item.quantity,
            trial_end=item.trial_end,
        )
    return QuantityPayload(
        price_id=item.price_id,
        license_key=item.license_key,
        quantity=item.quantity,
        trial_end=item.trial_end,
    )
