from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from grants import db
from grants.models import LifetimeTracking, utcnow
from .calculator import quantize

ZERO = Decimal('0')


@dataclass(frozen=True)
class Earning:
    new_total: Decimal
    just_capped: bool


class LifetimeCapTracker:
    """Cumulative earnings per address against a hard ceiling.

    Writes go through single UPDATE statements so two runs touching the same
    address cannot lose an increment. The caller owns the commit.
    """

    def __init__(self, cap, places: int = 2, session=None):
        self.cap = Decimal(str(cap))
        self.places = places
        self.session = session or db.session

    def _row(self, address: str):
        return self.session.execute(
            select(LifetimeTracking.lifetime_earned, LifetimeTracking.is_capped)
            .where(LifetimeTracking.address == address.lower())
        ).first()

    def is_eligible(self, address: str) -> bool:
        row = self._row(address)
        return not (row and row.is_capped)

    def lifetime_earned(self, address: str) -> Decimal:
        row = self._row(address)
        return Decimal(row.lifetime_earned) if row else ZERO

    def headroom(self, address: str) -> Decimal:
        row = self._row(address)
        if row and row.is_capped:
            return ZERO
        earned = Decimal(row.lifetime_earned) if row else ZERO
        return max(ZERO, self.cap - earned)

    def limit(self, address: str, amount: Decimal) -> Tuple[Decimal, bool]:
        """Truncate ``amount`` to what ``address`` may still receive.

        Returns the payable amount and whether this payment reaches the cap.
        """
        room = self.headroom(address)
        if amount >= room:
            return quantize(room, self.places), True
        return amount, False

    def apply_earning(self, address: str, amount, alias=None) -> Earning:
        address = address.lower()
        amount = Decimal(str(amount))
        now = utcnow()
        increment = (
            update(LifetimeTracking)
            .where(LifetimeTracking.address == address)
            .values(lifetime_earned=LifetimeTracking.lifetime_earned + amount, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(increment).rowcount == 0:
            try:
                with self.session.begin_nested():
                    self.session.add(LifetimeTracking(
                        address=address,
                        alias=alias,
                        lifetime_earned=amount,
                        is_capped=False,
                        updated_at=now,
                    ))
            except IntegrityError:
                # Another writer created the row first
                self.session.execute(increment)

        new_total = Decimal(self.session.execute(
            select(LifetimeTracking.lifetime_earned).where(LifetimeTracking.address == address)
        ).scalar_one())

        just_capped = False
        if new_total >= self.cap:
            capped = self.session.execute(
                update(LifetimeTracking)
                .where(LifetimeTracking.address == address, LifetimeTracking.is_capped.is_(False))
                .values(is_capped=True, capped_at=now)
                .execution_options(synchronize_session=False)
            )
            just_capped = capped.rowcount == 1
        return Earning(new_total=new_total, just_capped=just_capped)
