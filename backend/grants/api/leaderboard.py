from flask import Blueprint, jsonify, request

from grants.services.distribution.periods import parse_period_key, period_end, period_key_for
from grants.services.leaderboard import (
    RESULT_DELTAS,
    alltime_leaderboard,
    record_result,
    season_user_count,
    weekly_leaderboard,
)

leaderboard = Blueprint('leaderboard', __name__)


@leaderboard.route('', methods=['GET'])
def get_leaderboard():
    period_key = request.args.get('period') or period_key_for()
    parse_period_key(period_key)
    return jsonify({
        'season': {'start': period_key, 'end': period_end(period_key)},
        'top': weekly_leaderboard(period_key),
        'totals': {'totalUsers': season_user_count(period_key)},
    })


@leaderboard.route('', methods=['POST'])
def post_result():
    data = request.get_json(silent=True) or {}
    address = data.get('address')
    result = data.get('result')
    if not address or result not in RESULT_DELTAS:
        return jsonify({'error': 'invalid request', 'message': 'address and result (win, draw, loss) required'}), 400
    entry = record_result(address, result, alias=data.get('alias'), pfp_url=data.get('pfpUrl'))
    return jsonify({'ok': True, 'season': entry.period_key, 'entry': entry.to_dict()})


@leaderboard.route('/alltime', methods=['GET'])
def get_alltime():
    return jsonify({'top': alltime_leaderboard()})
