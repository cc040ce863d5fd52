"""Weekly distribution runs.

Per period key the run moves through
``NotStarted -> Computed (dry run) | Pending -> Finalizing -> Done``.
The batch row's primary key is the only arbiter of which trigger owns a
period; transfers are sent one at a time in rank order and a failed recipient
never stops the rest of the batch.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from grants import db, socketio
from grants.errors import (
    AlreadyProcessed,
    ConfigurationError,
    GatewayUnavailable,
    InsufficientFunds,
    RunInProgress,
    StoreWriteError,
)
from grants.models import DistributionBatch, DistributionRecord, LifetimeTracking, ScoreEntry, utcnow
from .calculator import calculate
from .gateway import TransferError, TransferFailure, TransferGateway, TransferOutcome, TransferSuccess
from .lifetime import LifetimeCapTracker
from .periods import mondays_between, parse_period_key
from .settings import DistributionSettings

ZERO = Decimal('0')


@dataclass
class PlannedPayout:
    rank: int
    address: str
    alias: Optional[str]
    weekly_points: int
    percentage: Decimal
    amount: Decimal
    capped: bool = False
    tx_status: Optional[str] = None
    tx_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: DistributionRecord) -> 'PlannedPayout':
        return cls(
            rank=record.rank,
            address=record.address,
            alias=record.alias,
            weekly_points=record.weekly_points,
            percentage=Decimal(record.percentage),
            amount=Decimal(record.amount),
            capped=record.capped,
            tx_status=record.tx_status,
            tx_hash=record.tx_hash,
        )

    def to_dict(self):
        payload = {
            'rank': self.rank,
            'address': self.address,
            'alias': self.alias,
            'weeklyPoints': self.weekly_points,
            'percentage': float(self.percentage),
            'amount': float(self.amount),
            'capped': self.capped,
        }
        if self.tx_status:
            payload['txStatus'] = self.tx_status
            payload['txHash'] = self.tx_hash
        return payload


@dataclass
class DistributionPlan:
    period_key: str
    asset: str
    budget: Decimal
    payouts: List[PlannedPayout] = field(default_factory=list)
    processed: bool = False

    @property
    def total_points(self) -> int:
        return sum(p.weekly_points for p in self.payouts)

    @property
    def total_amount(self) -> Decimal:
        return sum((p.amount for p in self.payouts), ZERO)

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.budget - self.total_amount)

    def to_dict(self):
        return {
            'periodKey': self.period_key,
            'asset': self.asset,
            'eligibleCount': len(self.payouts),
            'totalPoints': self.total_points,
            'totalAmount': float(self.total_amount),
            'distribution': [p.to_dict() for p in self.payouts],
            'budget': float(self.budget),
            'remaining': float(self.remaining),
            'processed': self.processed,
        }


@dataclass
class PaymentResult:
    rank: int
    address: str
    amount: Decimal
    outcome: TransferOutcome

    @property
    def ok(self) -> bool:
        return self.outcome.ok

    def to_dict(self):
        return {
            'rank': self.rank,
            'address': self.address,
            'amount': float(self.amount),
            'status': 'success' if self.ok else 'failed',
            'txHash': self.outcome.tx_hash,
            'error': None if self.ok else self.outcome.reason,
        }


@dataclass
class DistributionReport:
    plan: DistributionPlan
    message: str
    dry_run: bool = False
    records_created: int = 0
    payments: List[PaymentResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for p in self.payments if p.ok)

    @property
    def failed(self) -> int:
        return sum(1 for p in self.payments if not p.ok)

    def to_dict(self):
        payload = self.plan.to_dict()
        payload.update({
            'message': self.message,
            'dryRun': self.dry_run,
            'recordsCreated': self.records_created,
            'paymentsProcessed': bool(self.payments),
            'successfulPayments': self.successful,
            'failedPayments': self.failed,
            'paymentResults': [p.to_dict() for p in self.payments],
        })
        return payload


def emit_distribution_update(batch: DistributionBatch, **extra) -> None:
    payload = {'periodKey': batch.period_key, 'status': batch.status}
    payload.update(extra)
    socketio.emit('distribution_update', payload, to=f"period:{batch.period_key}", namespace='/ws')


class WeeklyDistributionOrchestrator:
    def __init__(
        self,
        settings: DistributionSettings,
        gateway: Optional[TransferGateway] = None,
        tracker: Optional[LifetimeCapTracker] = None,
        session=None,
        notify: Optional[Callable] = emit_distribution_update,
    ):
        self.settings = settings
        self.gateway = gateway
        self.session = session or db.session
        self.tracker = tracker or LifetimeCapTracker(settings.lifetime_cap, settings.amount_places, self.session)
        self.notify = notify

    @property
    def logger(self):
        return current_app.logger

    @property
    def system_ready(self) -> bool:
        return self.settings.system_ready and self.gateway is not None

    # ---- reads ----

    def eligible_entries(self, period_key: str) -> List[ScoreEntry]:
        """Top N score entries for the period, capped addresses excluded."""
        capped = LifetimeTracking.is_capped
        stmt = (
            select(ScoreEntry)
            .outerjoin(LifetimeTracking, LifetimeTracking.address == ScoreEntry.address)
            .where(ScoreEntry.period_key == period_key, or_(capped.is_(None), capped.is_(False)))
            .order_by(ScoreEntry.points.desc(), ScoreEntry.wins.desc(), ScoreEntry.address.asc())
            .limit(self.settings.top_n)
        )
        return list(self.session.execute(stmt).scalars())

    def compute(self, period_key: str) -> DistributionPlan:
        parse_period_key(period_key)
        entries = self.eligible_entries(period_key)
        by_address = {e.address: e for e in entries}
        allocations = calculate(
            [(e.address, e.points) for e in entries],
            self.settings.budget,
            min_points=self.settings.min_points,
            places=self.settings.amount_places,
        )
        payouts = []
        for allocation in allocations:
            amount, capped = self.tracker.limit(allocation.address, allocation.amount)
            payouts.append(PlannedPayout(
                rank=allocation.rank,
                address=allocation.address,
                alias=by_address[allocation.address].alias,
                weekly_points=allocation.points,
                percentage=allocation.percentage,
                amount=amount,
                capped=capped,
            ))
        return DistributionPlan(period_key, self.settings.asset, self.settings.budget, payouts)

    def describe(self, period_key: str) -> DistributionPlan:
        """Persisted records once a period is processed, a fresh computation before."""
        parse_period_key(period_key)
        batch = self.session.get(DistributionBatch, period_key)
        if batch is None:
            return self.compute(period_key)
        return DistributionPlan(
            period_key,
            batch.asset,
            Decimal(batch.budget),
            [PlannedPayout.from_record(r) for r in batch.records],
            processed=True,
        )

    def history(self, limit: int = 200) -> List[DistributionRecord]:
        stmt = (
            select(DistributionRecord)
            .order_by(DistributionRecord.period_key.desc(), DistributionRecord.rank.asc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())

    def _count(self, tx_status: str) -> int:
        return self.session.execute(
            select(func.count(DistributionRecord.id)).where(DistributionRecord.tx_status == tx_status)
        ).scalar_one()

    def pending_count(self) -> int:
        return self._count('pending')

    def completed_count(self) -> int:
        return self._count('completed')

    def status(self) -> dict:
        balance = None
        if self.system_ready:
            try:
                balance = self.gateway.get_balance().to_dict()
            except Exception as exc:
                self.logger.error(f"[dist-status] balance check failed: {exc}")
        return {
            'systemReady': self.system_ready,
            'paused': self.settings.paused,
            'asset': self.settings.asset,
            'balance': balance,
            'pendingCount': self.pending_count(),
            'completedCount': self.completed_count(),
        }

    # ---- runs ----

    def run(self, period_key: str, dry_run: bool = False) -> DistributionReport:
        parse_period_key(period_key)
        self._guard(period_key)
        if not dry_run:
            self._require_ready()

        plan = self.compute(period_key)
        if not plan.payouts:
            self.logger.info(f"[dist-empty] period={period_key} no eligible recipients")
            return DistributionReport(
                plan,
                f'No eligible recipients for period {period_key} '
                f'(minimum {self.settings.min_points} points required)',
                dry_run=dry_run,
            )
        if dry_run:
            self.logger.info(f"[dist-dry-run] period={period_key} recipients={len(plan.payouts)} total={plan.total_amount}")
            return DistributionReport(plan, f'Dry run successful for period {period_key}', dry_run=True)

        self._preflight(plan.total_amount)
        batch, records = self._persist(plan)
        payments = self._pay(batch)
        plan.processed = True
        report = DistributionReport(
            plan,
            f'Distribution processed for period {period_key}',
            records_created=len(records),
            payments=payments,
        )
        self.logger.info(
            f"[dist-done] period={period_key} records={len(records)} ok={report.successful} failed={report.failed}"
        )
        return report

    def create_pending_batch(self, period_key: str) -> DistributionPlan:
        """Record the period's pending batch without sending anything."""
        parse_period_key(period_key)
        self._guard(period_key)
        plan = self.compute(period_key)
        if plan.payouts:
            self._persist(plan)
            plan.processed = True
        return plan

    def process_pending(self, period_key: str) -> DistributionReport:
        """Pay records of a period that are still pending."""
        parse_period_key(period_key)
        self._require_ready()
        batch = self.session.get(DistributionBatch, period_key)
        records = self._pending_records(period_key) if batch else []
        if not records:
            plan = self.describe(period_key)
            return DistributionReport(plan, f'No pending records for period {period_key}')

        self._preflight(sum((Decimal(r.amount) for r in records), ZERO))
        payments = self._pay(batch)
        report = DistributionReport(
            self.describe(period_key),
            f'Processed {len(payments)} pending payments for period {period_key}',
            payments=payments,
        )
        self.logger.info(
            f"[dist-pending] period={period_key} ok={report.successful} failed={report.failed}"
        )
        return report

    def backfill(self, start: str, end: str) -> List[dict]:
        results = []
        for period_key in mondays_between(start, end):
            try:
                plan = self.create_pending_batch(period_key)
            except AlreadyProcessed:
                results.append({'periodKey': period_key, 'status': 'skipped', 'reason': 'Already processed'})
                continue
            except StoreWriteError as exc:
                results.append({'periodKey': period_key, 'status': 'error', 'reason': exc.context.get('details')})
                continue
            if not plan.payouts:
                results.append({
                    'periodKey': period_key,
                    'status': 'skipped',
                    'reason': f'No eligible recipients (minimum {self.settings.min_points} points required)',
                })
                continue
            results.append({
                'periodKey': period_key,
                'status': 'success',
                'eligibleCount': len(plan.payouts),
                'totalAmount': float(plan.total_amount),
            })
        return results

    # ---- phases ----

    def _guard(self, period_key: str) -> None:
        if self.session.get(DistributionBatch, period_key) is not None:
            raise AlreadyProcessed(period_key)
        existing = self.session.execute(
            select(DistributionRecord.id).where(DistributionRecord.period_key == period_key).limit(1)
        ).first()
        if existing is not None:
            raise AlreadyProcessed(period_key)

    def _require_ready(self) -> None:
        if not self.settings.system_ready:
            raise ConfigurationError()
        if self.gateway is None:
            raise ConfigurationError('No transfer gateway available for the funding wallet')

    def _preflight(self, required: Decimal) -> None:
        try:
            balance = self.gateway.get_balance()
        except Exception as exc:
            raise GatewayUnavailable(exc) from exc
        if balance.amount < required:
            self.logger.warning(
                f"[dist-preflight] insufficient balance required={required} available={balance.amount}"
            )
            raise InsufficientFunds(required, balance.amount, self.settings.asset)

    def _commit(self, phase: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            self.logger.error(f"[dist-store] phase={phase} error={exc}")
            raise StoreWriteError(phase, exc) from exc

    def _persist(self, plan: DistributionPlan):
        batch = DistributionBatch(
            period_key=plan.period_key,
            asset=plan.asset,
            budget=plan.budget,
            status='pending',
        )
        records = [
            DistributionRecord(
                period_key=plan.period_key,
                rank=p.rank,
                address=p.address,
                alias=p.alias,
                weekly_points=p.weekly_points,
                percentage=p.percentage,
                amount=p.amount,
                capped=p.capped,
                tx_status='pending',
            )
            for p in plan.payouts
        ]
        self.session.add(batch)
        self.session.add_all(records)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            self.logger.info(f"[dist-persist] period={plan.period_key} lost insert race: {exc.orig}")
            raise AlreadyProcessed(plan.period_key) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            self.logger.error(f"[dist-persist] period={plan.period_key} error={exc}")
            raise StoreWriteError('persist', exc) from exc
        self.logger.info(f"[dist-persist] period={plan.period_key} records={len(records)} total={plan.total_amount}")
        self._notify(batch)
        return batch, records

    def _pending_records(self, period_key: str) -> List[DistributionRecord]:
        stmt = (
            select(DistributionRecord)
            .where(DistributionRecord.period_key == period_key, DistributionRecord.tx_status == 'pending')
            .order_by(DistributionRecord.rank.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def _claim(self, period_key: str) -> None:
        """Move the batch to finalizing; only one caller per period gets past this."""
        claimed = self.session.execute(
            update(DistributionBatch)
            .where(
                DistributionBatch.period_key == period_key,
                DistributionBatch.status.in_(('pending', 'done')),
            )
            .values(status='finalizing')
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.logger.warning(f"[dist-claim] period={period_key} already being paid")
            raise RunInProgress(period_key)
        self._commit('finalizing')

    def _pay(self, batch: DistributionBatch) -> List[PaymentResult]:
        self._claim(batch.period_key)
        self._notify(batch)

        # Read after the claim so records paid by an earlier holder are skipped
        payments = []
        for record in self._pending_records(batch.period_key):
            outcome = self._settle(record)
            self._finalize(record, outcome)
            payments.append(PaymentResult(record.rank, record.address, Decimal(record.amount), outcome))

        batch.status = 'done'
        batch.finished_at = utcnow()
        self._commit('done')
        self._notify(
            batch,
            successful=sum(1 for p in payments if p.ok),
            failed=sum(1 for p in payments if not p.ok),
        )
        return payments

    def _settle(self, record: DistributionRecord) -> TransferOutcome:
        amount, capped = self.tracker.limit(record.address, Decimal(record.amount))
        if amount <= 0:
            return TransferFailure('lifetime cap reached')
        if amount != Decimal(record.amount):
            record.amount = amount
            record.capped = capped
        return self._attempt_transfer(record.address, amount)

    def _attempt_transfer(self, address: str, amount: Decimal) -> TransferOutcome:
        try:
            tx_hash = self.gateway.transfer(address, amount)
        except TransferError as exc:
            self.logger.warning(f"[dist-transfer] address={address} amount={amount} failed: {exc.reason}")
            return TransferFailure(exc.reason, exc.tx_hash)
        except Exception as exc:
            self.logger.exception(f"[dist-transfer] address={address} amount={amount} unexpected error")
            return TransferFailure(str(exc) or exc.__class__.__name__)
        self.logger.info(f"[dist-transfer] address={address} amount={amount} tx={tx_hash}")
        return TransferSuccess(tx_hash)

    def _finalize(self, record: DistributionRecord, outcome: TransferOutcome) -> None:
        if isinstance(outcome, TransferSuccess):
            record.tx_status = 'completed'
            record.tx_hash = outcome.tx_hash
            record.distributed_at = utcnow()
            record.error_message = None
            # Committed together with the completed status
            earning = self.tracker.apply_earning(record.address, Decimal(record.amount), alias=record.alias)
            if earning.just_capped:
                self.logger.info(f"[dist-cap] address={record.address} capped at total={earning.new_total}")
        else:
            record.tx_status = 'failed'
            record.tx_hash = outcome.tx_hash
            record.error_message = outcome.reason
        self._commit('finalize')

    def _notify(self, batch: DistributionBatch, **extra) -> None:
        if self.notify is not None:
            self.notify(batch, **extra)
