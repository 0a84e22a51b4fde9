from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ...helpers import to_iso


@dataclass(frozen=True)
class CatalogEntry:
    product_id: str
    name: str
    price: int
    description: Optional[str]
    stock: int
    updated_at: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price": self.price,
            "description": self.description or "",
            "stock": self.stock,
            "updated_at": to_iso(self.updated_at),
        }
