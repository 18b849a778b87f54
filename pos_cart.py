"""Point-of-sale cart."""
from typing import List

from pydantic import BaseModel

from models import InventoryProduct, LineItem


class CartLine(BaseModel):
    id: str
    name: str
    brand: str = 'N/A'
    price: float = 0.0
    qty: int = 1
    img: str = ''
    original_stock: int = 0


class Cart:
    def __init__(self):
        self.lines: List[CartLine] = []

    def __len__(self) -> int:
        return len(self.lines)

    def _find(self, product_id: str):
        for line in self.lines:
            if line.id == product_id:
                return line
        return None

    def add(self, product: InventoryProduct) -> CartLine:
        line = self._find(product.id)
        if line is not None:
            line.qty += 1
            return line
        line = CartLine(
            id=product.id,
            name=product.name,
            brand=product.brand or 'N/A',
            price=product.price,
            img=product.img,
            original_stock=product.stock,
        )
        self.lines.append(line)
        return line

    def update_qty(self, product_id: str, delta: int) -> None:
        # quantity never drops below one; use remove() to drop a line
        line = self._find(product_id)
        if line is not None:
            line.qty = max(1, line.qty + delta)

    def remove(self, product_id: str) -> None:
        self.lines = [line for line in self.lines if line.id != product_id]

    def clear(self) -> None:
        self.lines = []

    @property
    def subtotal(self) -> float:
        return sum(line.price * line.qty for line in self.lines)

    def total(self, discount: float = 0.0) -> float:
        return self.subtotal - discount

    def line_items(self) -> List[LineItem]:
        return [
            LineItem(id=l.id, name=l.name, brand=l.brand, price=l.price, qty=l.qty, img=l.img)
            for l in self.lines
        ]
