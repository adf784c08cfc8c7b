from __future__ import annotations

from typing import List, Sequence


class ValidationError(ValueError):
    """Submitted data failed a field or integrity check."""


class NotFoundError(ValueError):
    pass


class BookingError(ValidationError):
    pass


class OverbookingError(BookingError):
    """Raised when one or more booking items exceed available stock.

    ``products`` lists every offending product name, in request order.
    """

    def __init__(self, products: Sequence[str]):
        self.products: List[str] = list(products)
        super().__init__(
            "The following products are overbooked: " + ", ".join(self.products)
        )
