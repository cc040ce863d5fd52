from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from grants import db
from grants.models import LifetimeTracking, ScoreEntry
from grants.services.distribution.periods import period_key_for

# wins, draws, losses, points added per game result
RESULT_DELTAS = {
    'win': (1, 0, 0, 2),
    'draw': (0, 1, 0, 1),
    'loss': (0, 0, 1, 2),
}


def record_result(address: str, result: str, alias=None, pfp_url=None, period_key=None) -> ScoreEntry:
    """Add one game result to the address's entry for the period (current week by default)."""
    if result not in RESULT_DELTAS:
        raise ValueError(f'Unknown result {result!r}')
    address = address.lower()
    period_key = period_key or period_key_for()
    wins, draws, losses, points = RESULT_DELTAS[result]

    for attempt in range(2):
        entry = ScoreEntry.query.filter_by(period_key=period_key, address=address).first()
        if entry is None:
            entry = ScoreEntry(period_key=period_key, address=address, wins=0, draws=0, losses=0, points=0)
            db.session.add(entry)
        entry.wins += wins
        entry.draws += draws
        entry.losses += losses
        entry.points += points
        if alias and not entry.alias:
            entry.alias = alias
        if pfp_url and not entry.pfp_url:
            entry.pfp_url = pfp_url
        try:
            db.session.commit()
            return entry
        except IntegrityError:
            # Concurrent first result for this address; retry against the stored row
            db.session.rollback()
            if attempt:
                raise


def weekly_leaderboard(period_key: str, limit: int = 30):
    rows = db.session.execute(
        select(ScoreEntry, LifetimeTracking)
        .outerjoin(LifetimeTracking, LifetimeTracking.address == ScoreEntry.address)
        .where(ScoreEntry.period_key == period_key)
        .order_by(ScoreEntry.points.desc(), ScoreEntry.wins.desc(), ScoreEntry.updated_at.desc())
        .limit(limit)
    ).all()
    top = []
    for index, (entry, lifetime) in enumerate(rows):
        row = entry.to_dict()
        row['rank'] = index + 1
        row['lifetimeEarned'] = float(lifetime.lifetime_earned) if lifetime else 0.0
        row['isCapped'] = bool(lifetime and lifetime.is_capped)
        row['cappedAt'] = lifetime.capped_at.isoformat() if lifetime and lifetime.capped_at else None
        top.append(row)
    return top


def alltime_leaderboard(limit: int = 30):
    points = func.sum(ScoreEntry.points).label('points')
    rows = db.session.execute(
        select(
            ScoreEntry.address,
            func.max(ScoreEntry.alias).label('alias'),
            func.sum(ScoreEntry.wins).label('wins'),
            func.sum(ScoreEntry.draws).label('draws'),
            func.sum(ScoreEntry.losses).label('losses'),
            points,
        )
        .group_by(ScoreEntry.address)
        .order_by(points.desc(), ScoreEntry.address.asc())
        .limit(limit)
    ).all()
    return [
        {
            'rank': index + 1,
            'address': row.address,
            'alias': row.alias,
            'wins': int(row.wins or 0),
            'draws': int(row.draws or 0),
            'losses': int(row.losses or 0),
            'points': int(row.points or 0),
        }
        for index, row in enumerate(rows)
    ]


def season_user_count(period_key: str) -> int:
    return ScoreEntry.query.filter_by(period_key=period_key).count()
