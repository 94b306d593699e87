from enum import Enum
from typing import List


class LotSelectionMethod(Enum):
    """
    Order in which tax lots are consumed on a sale.

    FIFO: First In, First Out (oldest purchase first, the statutory default)
    LIFO: Last In, First Out (newest purchase first; smaller gains early on
          in a rising market, larger ones later)
    """
    FIFO = "fifo"
    LIFO = "lifo"


def select_lot_fifo(lots: List) -> int:
    """FIFO: the oldest (first) lot."""
    return 0


def select_lot_lifo(lots: List) -> int:
    """LIFO: the newest (last) lot."""
    return len(lots) - 1


def select_lot_index(lots: List, method: LotSelectionMethod) -> int:
    """Index of the next lot to sell under `method`; -1 when no lots remain."""
    if not lots:
        return -1
    if method == LotSelectionMethod.LIFO:
        return select_lot_lifo(lots)
    return select_lot_fifo(lots)
