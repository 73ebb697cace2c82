"""Entity types shared by the tracking and repository tests."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mongoguard.tracking import mapped_field


@dataclass
class Address:
    city: str = ""
    zip: Optional[str] = None


@dataclass
class Item:
    sku: str = ""
    qty: int = 0


@dataclass
class Customer:
    id: Optional[str] = mapped_field("_id", default=None)
    name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    address: Optional[Address] = None
    items: List[Item] = field(default_factory=list)
    scores: Tuple[int, ...] = ()
    attributes: Dict[str, Any] = field(default_factory=dict)
    buffer: Optional[bytearray] = None


@dataclass
class Order:
    id: Optional[str] = mapped_field("_id", default=None)
    total: float = 0.0
    status: str = "new"
    create_date: Optional[datetime] = None
    update_date: Optional[datetime] = None
