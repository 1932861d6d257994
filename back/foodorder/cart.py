"""
Customer cart.

The cart lives with the customer until checkout, so it is kept separate from
the order tables: `CartStore` holds the lines in memory and writes through a
`CartRepository` after every change. Storage is swappable (JSON file for a
kiosk or CLI client, in-memory for tests).
"""

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from .errors import ValidationError
from .pricing import ZERO, line_total, to_money

logger = logging.getLogger(__name__)


@dataclass
class CartLine:
    food_item_id: int
    name: str
    unit_price: Decimal
    quantity: int
    image: str | None = None

    @property
    def line_total(self) -> Decimal:
        return line_total(self.unit_price, self.quantity)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["unit_price"] = str(self.unit_price)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLine":
        quantity = int(data["quantity"])
        if quantity < 1:
            raise ValueError(f"Invalid quantity {quantity} for item {data.get('food_item_id')}")
        unit_price = to_money(data["unit_price"])
        line_total(unit_price, quantity)  # raises ValidationError on a negative price
        return cls(
            food_item_id=int(data["food_item_id"]),
            name=str(data["name"]),
            unit_price=unit_price,
            quantity=quantity,
            image=data.get("image"),
        )


@dataclass(frozen=True)
class CartNotification:
    kind: str  # 'added' or 'removed'
    title: str
    message: str


class CartRepository(Protocol):
    def load(self) -> list[CartLine]: ...

    def save(self, lines: list[CartLine]) -> None: ...


class InMemoryCartRepository:
    def __init__(self, lines: list[CartLine] | None = None):
        self._data = [line.to_dict() for line in lines or []]

    def load(self) -> list[CartLine]:
        return [CartLine.from_dict(item) for item in self._data]

    def save(self, lines: list[CartLine]) -> None:
        self._data = [line.to_dict() for line in lines]


class JsonFileCartRepository:
    """Stores the cart as a JSON array on disk."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> list[CartLine]:
        if not self.path.exists():
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError("Stored cart is not a list")
        return [CartLine.from_dict(item) for item in raw]

    def save(self, lines: list[CartLine]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps([line.to_dict() for line in lines]), encoding="utf-8"
        )
        tmp_path.replace(self.path)


def _log_notification(notification: CartNotification) -> None:
    logger.info(f"{notification.title}: {notification.message}")


class CartStore:
    def __init__(
        self,
        repository: CartRepository,
        notify: Callable[[CartNotification], None] | None = None,
    ):
        self.repository = repository
        self.notify = notify or _log_notification
        self._lines: list[CartLine] = self._load()

    def _load(self) -> list[CartLine]:
        try:
            return self.repository.load()
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Discarding malformed stored cart: {e}")
            return []

    def _persist(self) -> None:
        try:
            self.repository.save(self._lines)
        except OSError as e:
            logger.warning(f"Failed to persist cart: {e}")

    def _find(self, food_item_id: int) -> CartLine | None:
        for line in self._lines:
            if line.food_item_id == food_item_id:
                return line
        return None

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines)

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def total_price(self) -> Decimal:
        return sum((line.line_total for line in self._lines), ZERO)

    def add(self, item: Any, quantity: int = 1) -> CartLine:
        """Add `quantity` of a catalog item, merging with an existing line."""
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        existing = self._find(item.id)
        if existing:
            existing.quantity += quantity
            line = existing
        else:
            line = CartLine(
                food_item_id=item.id,
                name=item.name,
                unit_price=to_money(item.price),
                quantity=quantity,
                image=getattr(item, "image", None),
            )
            self._lines.append(line)

        self._persist()
        self.notify(CartNotification(
            kind="added",
            title="Added to cart",
            message=f"{quantity} × {item.name} added to your cart",
        ))
        return line

    def remove(self, food_item_id: int) -> bool:
        before = len(self._lines)
        self._lines = [line for line in self._lines if line.food_item_id != food_item_id]
        if len(self._lines) == before:
            return False

        self._persist()
        self.notify(CartNotification(
            kind="removed",
            title="Item removed",
            message="The item has been removed from your cart",
        ))
        return True

    def set_quantity(self, food_item_id: int, quantity: int) -> bool:
        # Quantities below one are ignored; removal is explicit
        if quantity < 1:
            return False
        line = self._find(food_item_id)
        if not line:
            return False
        line.quantity = quantity
        self._persist()
        return True

    def clear(self) -> None:
        self._lines = []
        self._persist()

    def to_order_items(self) -> list[dict[str, int]]:
        """Checkout payload: ids and quantities only, prices are resolved server side."""
        return [
            {"food_item_id": line.food_item_id, "quantity": line.quantity}
            for line in self._lines
        ]
