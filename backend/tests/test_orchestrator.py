from decimal import Decimal

import pytest

from grants import db
from grants.errors import AlreadyProcessed, ConfigurationError, InsufficientFunds, RunInProgress, StoreWriteError
from grants.models import DistributionBatch, DistributionRecord, LifetimeTracking
from grants.services.distribution import build_orchestrator
from grants.services.distribution.orchestrator import WeeklyDistributionOrchestrator
from grants.services.distribution.settings import DistributionSettings

from conftest import ALICE, BOB, CARA, DAVE, NEXT_PERIOD, PERIOD, TestConfig


def _settings(**overrides):
    values = dict(
        funding_address=TestConfig.FUNDING_WALLET,
        private_key=TestConfig.FUNDING_PRIVATE_KEY,
    )
    values.update(overrides)
    return DistributionSettings(**values)


def _records(period_key=PERIOD):
    return DistributionRecord.query.filter_by(period_key=period_key).order_by(DistributionRecord.rank).all()


def _earned(address):
    row = db.session.get(LifetimeTracking, address)
    return Decimal(row.lifetime_earned) if row else Decimal('0')


@pytest.fixture()
def orchestrator(flask_app):
    return build_orchestrator(flask_app)


def test_run_pays_recipients_and_tracks_lifetime(orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300, 60, 'alice'), (BOB, 150), (CARA, 50)])

    report = orchestrator.run(PERIOD)

    assert report.records_created == 2
    assert report.successful == 2 and report.failed == 0
    assert gateway.sent == [(ALICE, Decimal('66.67')), (BOB, Decimal('33.33'))]

    records = _records()
    assert [(r.rank, r.address, Decimal(r.amount), r.tx_status) for r in records] == [
        (1, ALICE, Decimal('66.67'), 'completed'),
        (2, BOB, Decimal('33.33'), 'completed'),
    ]
    assert all(r.tx_hash and r.distributed_at for r in records)
    assert records[0].alias == 'alice'
    assert db.session.get(DistributionBatch, PERIOD).status == 'done'
    assert _earned(ALICE) == Decimal('66.67')
    assert _earned(CARA) == Decimal('0')


def test_second_run_is_refused_without_side_effects(orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    orchestrator.run(PERIOD)

    with pytest.raises(AlreadyProcessed) as excinfo:
        orchestrator.run(PERIOD)
    assert excinfo.value.to_dict()['existing'] is True
    with pytest.raises(AlreadyProcessed):
        orchestrator.run(PERIOD, dry_run=True)

    assert len(_records()) == 2
    assert len(gateway.sent) == 2
    assert _earned(ALICE) == Decimal('66.67')


def test_lost_insert_race_reports_already_processed(orchestrator, gateway, seed_scores, monkeypatch):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    orchestrator.run(PERIOD)
    db.session.expunge_all()

    # A concurrent trigger that passed the pre-check before the first insert landed
    monkeypatch.setattr(orchestrator, '_guard', lambda period_key: None)
    with pytest.raises(AlreadyProcessed):
        orchestrator.run(PERIOD)

    assert len(_records()) == 2
    assert len(gateway.sent) == 2


def test_dry_run_matches_real_run_and_writes_nothing(orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150), (CARA, 120)])

    dry = orchestrator.run(PERIOD, dry_run=True)
    assert dry.dry_run
    assert dry.records_created == 0
    assert _records() == []
    assert db.session.get(DistributionBatch, PERIOD) is None
    assert gateway.attempts == []

    real = orchestrator.run(PERIOD)
    key = lambda plan: [(p.rank, p.address, p.percentage, p.amount) for p in plan.payouts]
    assert key(dry.plan) == key(real.plan)


def test_insufficient_balance_aborts_before_any_write(orchestrator, gateway, seed_scores):
    gateway.balance = Decimal('50')
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])

    with pytest.raises(InsufficientFunds) as excinfo:
        orchestrator.run(PERIOD)

    payload = excinfo.value.to_dict()
    assert payload['required'] == 100.0
    assert payload['available'] == 50.0
    assert _records() == []
    assert db.session.get(DistributionBatch, PERIOD) is None
    assert LifetimeTracking.query.count() == 0
    assert gateway.attempts == []


def test_failed_recipient_does_not_stop_the_batch(orchestrator, gateway, seed_scores):
    gateway.failing.add(ALICE)
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])

    report = orchestrator.run(PERIOD)

    assert report.successful == 1 and report.failed == 1
    assert [a for a, _ in gateway.attempts] == [ALICE, BOB]
    alice, bob = _records()
    assert alice.tx_status == 'failed'
    assert alice.error_message == 'execution reverted'
    assert bob.tx_status == 'completed'
    # Only completed transfers count toward lifetime earnings
    assert db.session.get(LifetimeTracking, ALICE) is None
    assert _earned(BOB) == Decimal('33.33')
    assert db.session.get(DistributionBatch, PERIOD).status == 'done'


def test_run_requires_configured_funding_wallet(flask_app, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300)])
    orchestrator = WeeklyDistributionOrchestrator(DistributionSettings(), gateway=gateway)

    with pytest.raises(ConfigurationError):
        orchestrator.run(PERIOD)
    assert _records() == []

    # Dry runs only compute and need no wallet
    report = orchestrator.run(PERIOD, dry_run=True)
    assert report.plan.payouts[0].amount == Decimal('100.00')


def test_no_eligible_recipients_returns_message(orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 99), (BOB, 20)])

    report = orchestrator.run(PERIOD)

    assert report.plan.payouts == []
    assert 'No eligible recipients' in report.message
    assert db.session.get(DistributionBatch, PERIOD) is None
    assert gateway.attempts == []


def test_capped_addresses_are_truncated_then_excluded(flask_app, gateway, seed_scores):
    orchestrator = WeeklyDistributionOrchestrator(_settings(), gateway=gateway, notify=None)
    weeks = ['2025-01-06', '2025-01-13', '2025-01-20']
    for week in weeks:
        seed_scores(week, [(ALICE, 300), (BOB, 150)])

    orchestrator.run(weeks[0])
    second = orchestrator.run(weeks[1])
    alice = second.plan.payouts[0]
    assert alice.amount == Decimal('33.33')
    assert alice.capped
    assert _earned(ALICE) == Decimal('100.00')
    assert db.session.get(LifetimeTracking, ALICE).is_capped

    third = orchestrator.run(weeks[2])
    assert [p.address for p in third.plan.payouts] == [BOB]
    assert third.plan.payouts[0].amount == Decimal('33.34')
    assert third.plan.payouts[0].capped
    assert _earned(BOB) == Decimal('100.00')
    assert _earned(ALICE) <= Decimal('100.00')


def test_capped_address_frees_its_top_slot(flask_app, gateway, seed_scores):
    orchestrator = WeeklyDistributionOrchestrator(_settings(top_n=2), gateway=gateway, notify=None)
    orchestrator.tracker.apply_earning(ALICE, Decimal('100'))
    db.session.commit()
    seed_scores(PERIOD, [(ALICE, 500), (BOB, 300), (CARA, 200), (DAVE, 100)])

    plan = orchestrator.compute(PERIOD)

    assert [(p.rank, p.address, p.amount) for p in plan.payouts] == [
        (1, BOB, Decimal('60.00')),
        (2, CARA, Decimal('40.00')),
    ]


def test_ties_order_by_wins(flask_app, gateway, seed_scores):
    orchestrator = WeeklyDistributionOrchestrator(_settings(top_n=1), gateway=gateway, notify=None)
    seed_scores(PERIOD, [(ALICE, 200, 10), (BOB, 200, 40)])

    plan = orchestrator.compute(PERIOD)

    assert [p.address for p in plan.payouts] == [BOB]


def test_backfill_then_process_pending(orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    seed_scores(NEXT_PERIOD, [(CARA, 40)])

    results = orchestrator.backfill('2025-01-01', '2025-01-19')

    assert [(r['periodKey'], r['status']) for r in results] == [
        (PERIOD, 'success'), (NEXT_PERIOD, 'skipped'),
    ]
    assert results[0]['totalAmount'] == 100.0
    assert {r.tx_status for r in _records()} == {'pending'}
    assert orchestrator.pending_count() == 2
    assert gateway.attempts == []

    again = orchestrator.backfill(PERIOD, PERIOD)
    assert again == [{'periodKey': PERIOD, 'status': 'skipped', 'reason': 'Already processed'}]

    report = orchestrator.process_pending(PERIOD)
    assert report.successful == 2
    assert orchestrator.pending_count() == 0
    assert {r.tx_status for r in _records()} == {'completed'}
    assert _earned(ALICE) == Decimal('66.67')

    empty = orchestrator.process_pending(PERIOD)
    assert empty.payments == []


def test_pending_payouts_are_rechecked_against_the_cap(flask_app, gateway, seed_scores):
    orchestrator = WeeklyDistributionOrchestrator(_settings(), gateway=gateway, notify=None)
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    seed_scores(NEXT_PERIOD, [(ALICE, 300), (BOB, 150)])
    orchestrator.backfill(PERIOD, NEXT_PERIOD)

    orchestrator.process_pending(PERIOD)
    orchestrator.process_pending(NEXT_PERIOD)

    alice = _records(NEXT_PERIOD)[0]
    assert Decimal(alice.amount) == Decimal('33.33')
    assert alice.capped
    assert _earned(ALICE) == Decimal('100.00')
    assert (ALICE, Decimal('33.33')) in gateway.sent


def test_status_reports_balance_and_pending(orchestrator):
    status = orchestrator.status()
    assert status['systemReady'] is True
    assert status['paused'] is False
    assert status['asset'] == 'usdc'
    assert status['balance']['formatted'] == '1000.000000'
    assert status['balance']['sufficient'] is True
    assert status['pendingCount'] == 0


def test_run_notifies_each_state_change(flask_app, gateway, seed_scores):
    events = []
    orchestrator = WeeklyDistributionOrchestrator(
        _settings(), gateway=gateway,
        notify=lambda batch, **extra: events.append((batch.status, extra)),
    )
    seed_scores(PERIOD, [(ALICE, 300)])

    orchestrator.run(PERIOD)

    assert [status for status, _ in events] == ['pending', 'finalizing', 'done']
    assert events[-1][1] == {'successful': 1, 'failed': 0}


def test_overlapping_pending_calls_pay_once(flask_app, orchestrator, gateway, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    orchestrator.create_pending_batch(PERIOD)
    rival = build_orchestrator(flask_app)
    refused = []
    transfer = gateway.transfer

    # A second trigger arrives while the first transfer is in flight
    def transfer_and_reenter(recipient, amount):
        if not refused:
            with pytest.raises(RunInProgress):
                rival.process_pending(PERIOD)
            refused.append(recipient)
        return transfer(recipient, amount)

    gateway.transfer = transfer_and_reenter
    report = orchestrator.process_pending(PERIOD)

    assert refused == [ALICE]
    assert gateway.sent == [(ALICE, Decimal('66.67')), (BOB, Decimal('33.33'))]
    assert report.successful == 2
    assert db.session.get(DistributionBatch, PERIOD).status == 'done'
    assert orchestrator.process_pending(PERIOD).payments == []
    assert len(gateway.sent) == 2


def test_store_failure_mid_batch_keeps_earnings_of_paid_records(orchestrator, gateway, seed_scores, monkeypatch):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    commit = orchestrator._commit
    finalized = []

    def commit_failing_second_finalize(phase):
        if phase == 'finalize':
            finalized.append(phase)
            if len(finalized) == 2:
                orchestrator.session.rollback()
                raise StoreWriteError(phase, 'database is locked')
        commit(phase)

    monkeypatch.setattr(orchestrator, '_commit', commit_failing_second_finalize)
    with pytest.raises(StoreWriteError) as excinfo:
        orchestrator.run(PERIOD)
    monkeypatch.undo()

    assert excinfo.value.to_dict()['error'] == 'store write failed'
    alice, bob = _records()
    assert alice.tx_status == 'completed'
    assert _earned(ALICE) == Decimal('66.67')
    assert bob.tx_status == 'pending'
    assert db.session.get(LifetimeTracking, BOB) is None
    # The batch stays claimed, so a later call cannot resend to anyone
    assert db.session.get(DistributionBatch, PERIOD).status == 'finalizing'
    with pytest.raises(RunInProgress):
        orchestrator.process_pending(PERIOD)
    assert len(gateway.sent) == 2


def test_status_counts_completed_records(orchestrator, seed_scores):
    seed_scores(PERIOD, [(ALICE, 300), (BOB, 150)])
    orchestrator.run(PERIOD)

    status = orchestrator.status()
    assert status['completedCount'] == 2
    assert status['pendingCount'] == 0
