from datetime import datetime, timezone
from grants import db


def utcnow():
    return datetime.now(timezone.utc)


def _money(value):
    return float(value) if value is not None else 0.0


def _iso(value):
    return value.isoformat() if value else None


MONEY = db.Numeric(18, 6)


class ScoreEntry(db.Model):
    __tablename__ = 'score_entry'
    __table_args__ = (
        db.UniqueConstraint('period_key', 'address', name='uq_score_entry_period_address'),
    )
    id = db.Column(db.Integer, primary_key=True)
    period_key = db.Column(db.String(10), nullable=False, index=True)
    address = db.Column(db.String(42), nullable=False, index=True)
    alias = db.Column(db.String(64), nullable=True)
    pfp_url = db.Column(db.String(512), nullable=True)
    wins = db.Column(db.Integer, default=0, nullable=False)
    draws = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    points = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'periodKey': self.period_key,
            'address': self.address,
            'alias': self.alias,
            'pfpUrl': self.pfp_url,
            'wins': self.wins,
            'draws': self.draws,
            'losses': self.losses,
            'points': self.points,
        }


class DistributionBatch(db.Model):
    """One row per distributed period; its primary key is the duplicate-run guard."""
    __tablename__ = 'distribution_batch'
    period_key = db.Column(db.String(10), primary_key=True)
    asset = db.Column(db.String(16), nullable=False)
    budget = db.Column(MONEY, nullable=False)
    status = db.Column(db.String(16), default='pending', nullable=False)  # pending, finalizing, done
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)
    records = db.relationship(
        'DistributionRecord',
        back_populates='batch',
        order_by='DistributionRecord.rank',
    )

    def to_dict(self):
        return {
            'periodKey': self.period_key,
            'asset': self.asset,
            'budget': _money(self.budget),
            'status': self.status,
            'createdAt': _iso(self.created_at),
            'finishedAt': _iso(self.finished_at),
        }


class DistributionRecord(db.Model):
    __tablename__ = 'distribution_record'
    __table_args__ = (
        db.UniqueConstraint('period_key', 'rank', name='uq_distribution_record_period_rank'),
        db.UniqueConstraint('period_key', 'address', name='uq_distribution_record_period_address'),
    )
    id = db.Column(db.Integer, primary_key=True)
    period_key = db.Column(db.String(10), db.ForeignKey('distribution_batch.period_key'), nullable=False, index=True)
    rank = db.Column(db.Integer, nullable=False)
    address = db.Column(db.String(42), nullable=False)
    alias = db.Column(db.String(64), nullable=True)
    weekly_points = db.Column(db.Integer, nullable=False)
    percentage = db.Column(db.Numeric(6, 2), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    capped = db.Column(db.Boolean, default=False, nullable=False)
    tx_hash = db.Column(db.String(66), nullable=True)
    tx_status = db.Column(db.String(16), default='pending', nullable=False, index=True)  # pending, completed, failed
    error_message = db.Column(db.Text, nullable=True)
    distributed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)
    batch = db.relationship('DistributionBatch', back_populates='records')

    def to_dict(self):
        return {
            'periodKey': self.period_key,
            'rank': self.rank,
            'address': self.address,
            'alias': self.alias,
            'weeklyPoints': self.weekly_points,
            'percentage': _money(self.percentage),
            'amount': _money(self.amount),
            'capped': self.capped,
            'txHash': self.tx_hash,
            'txStatus': self.tx_status,
            'error': self.error_message,
            'distributedAt': _iso(self.distributed_at),
        }


class LifetimeTracking(db.Model):
    __tablename__ = 'lifetime_tracking'
    address = db.Column(db.String(42), primary_key=True)
    alias = db.Column(db.String(64), nullable=True)
    lifetime_earned = db.Column(MONEY, default=0, nullable=False)
    is_capped = db.Column(db.Boolean, default=False, nullable=False)
    capped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'address': self.address,
            'alias': self.alias,
            'lifetimeEarned': _money(self.lifetime_earned),
            'isCapped': self.is_capped,
            'cappedAt': _iso(self.capped_at),
        }
