import os
import sys
from decimal import Decimal
import pytest

# Ensure the backend root (containing the `grants` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from grants import create_app, db, socketio
from grants.services.distribution.gateway import Balance, TransferError, TransferGateway, scale_amount


PERIOD = '2025-01-06'
NEXT_PERIOD = '2025-01-13'
ALICE = '0x' + 'a' * 40
BOB = '0x' + 'b' * 40
CARA = '0x' + 'c' * 40
DAVE = '0x' + 'd' * 40


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    FUNDING_WALLET = '0x' + 'f' * 40
    FUNDING_PRIVATE_KEY = '0x' + '1' * 64
    CRON_SECRET = 'test-cron-secret'
    PAUSE_DISTRIBUTIONS = False
    DISTRIBUTION_ASSET = 'usdc'
    MIN_POINTS_THRESHOLD = 100


class FakeGateway(TransferGateway):
    """In-memory funding wallet: records every attempt, fails listed recipients."""

    symbol = 'USDC'
    decimals = 6

    def __init__(self, balance='1000'):
        self.balance = Decimal(balance)
        self.failing = set()
        self.attempts = []
        self.sent = []

    def get_balance(self):
        return Balance(raw=scale_amount(self.balance, self.decimals), decimals=self.decimals, symbol=self.symbol)

    def transfer(self, recipient, amount):
        self.attempts.append((recipient, amount))
        if recipient in self.failing:
            raise TransferError('execution reverted')
        self.sent.append((recipient, amount))
        self.balance -= amount
        return '0x' + format(len(self.sent), '064x')


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def flask_app(gateway):
    application = create_app(TestConfig)
    application.extensions['transfer_gateway'] = gateway
    with application.app_context():
        # Ensure models are imported so tables are created
        import grants.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def seed_scores(flask_app):
    """Insert score entries: seed_scores(period, [(address, points[, wins[, alias]]), ...])."""
    from grants.models import ScoreEntry

    def _seed(period_key, rows):
        for row in rows:
            address, points = row[0], row[1]
            wins = row[2] if len(row) > 2 else 0
            alias = row[3] if len(row) > 3 else None
            db.session.add(ScoreEntry(
                period_key=period_key, address=address, alias=alias,
                wins=wins, draws=0, losses=0, points=points,
            ))
        db.session.commit()

    return _seed
