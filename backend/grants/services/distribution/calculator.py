from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Tuple

DEFAULT_MIN_POINTS = 100
HUNDRED = Decimal(100)


@dataclass(frozen=True)
class Allocation:
    rank: int
    address: str
    points: int
    percentage: Decimal
    amount: Decimal


def quantize(value: Decimal, places: int = 2) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def calculate(
    entries: Iterable[Tuple[str, int]],
    budget,
    min_points: int = DEFAULT_MIN_POINTS,
    places: int = 2,
) -> List[Allocation]:
    """Split ``budget`` across ``entries`` proportionally to their points.

    ``entries`` are ``(address, points)`` pairs already ranked by the caller;
    entries under ``min_points`` are dropped and the rest keep their order.
    Percentage and amount are each rounded half-up on their own, so amounts may
    drift from the budget by up to half a unit of the last place per recipient.
    """
    budget = Decimal(str(budget))
    eligible = [(address, int(points)) for address, points in entries if int(points) >= min_points]
    total = sum(points for _, points in eligible)
    if not eligible or total <= 0:
        return []

    allocations = []
    for index, (address, points) in enumerate(eligible):
        allocations.append(Allocation(
            rank=index + 1,
            address=address,
            points=points,
            percentage=quantize(Decimal(points) * HUNDRED / Decimal(total)),
            amount=quantize(Decimal(points) * budget / Decimal(total), places),
        ))
    return allocations
