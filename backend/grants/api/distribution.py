import hmac

from flask import Blueprint, current_app, jsonify, request

from grants.errors import AlreadyProcessed, InvalidPeriod
from grants.services.distribution import build_orchestrator
from grants.services.distribution.periods import period_key_for, previous_period_key

distribution = Blueprint('distribution', __name__)


def _orchestrator():
    return build_orchestrator(current_app._get_current_object())


def _paused_response():
    return jsonify({'message': 'Distributions are currently paused', 'paused': True})


@distribution.route('/distribution', methods=['GET'])
def get_distribution():
    period_key = request.args.get('period') or period_key_for()
    plan = _orchestrator().describe(period_key)
    return jsonify(plan.to_dict())


@distribution.route('/distribution', methods=['POST'])
def post_distribution():
    data = request.get_json(silent=True) or {}
    period_key = data.get('periodKey')
    if not period_key:
        raise InvalidPeriod(period_key, 'periodKey required')
    dry_run = data.get('dryRun', False)
    if not isinstance(dry_run, bool):
        return jsonify({'error': 'invalid request', 'message': 'dryRun must be true or false'}), 400

    orchestrator = _orchestrator()
    if orchestrator.settings.paused:
        current_app.logger.info(f"[dist-paused] period={period_key} refused")
        return _paused_response()

    report = orchestrator.run(period_key, dry_run=dry_run)
    return jsonify(report.to_dict())


@distribution.route('/distribution/pending', methods=['POST'])
def process_pending():
    data = request.get_json(silent=True) or {}
    period_key = data.get('periodKey')
    if not period_key:
        raise InvalidPeriod(period_key, 'periodKey required')
    orchestrator = _orchestrator()
    if orchestrator.settings.paused:
        return _paused_response()
    report = orchestrator.process_pending(period_key)
    return jsonify(report.to_dict())


@distribution.route('/distribution/backfill', methods=['POST'])
def backfill():
    data = request.get_json(silent=True) or {}
    start, end = data.get('startDate'), data.get('endDate')
    if not (start and end):
        return jsonify({'error': 'invalid request', 'message': 'startDate and endDate required'}), 400
    results = _orchestrator().backfill(start, end)
    return jsonify({
        'message': f'Backfill completed for {len(results)} weeks',
        'processedWeeks': sum(1 for r in results if r['status'] == 'success'),
        'totalWeeks': len(results),
        'results': results,
    })


@distribution.route('/distribution/history', methods=['GET'])
def history():
    limit = request.args.get('limit', 200, type=int)
    limit = max(1, min(limit, 1000))
    rows = [r.to_dict() for r in _orchestrator().history(limit)]
    return jsonify({'history': rows, 'total': len(rows)})


@distribution.route('/system-status', methods=['GET'])
def system_status():
    return jsonify(_orchestrator().status())


def _cron_authorized() -> bool:
    secret = current_app.config.get('CRON_SECRET')
    if not secret:
        current_app.logger.warning("[cron] CRON_SECRET not configured; rejecting trigger")
        return False
    header = request.headers.get('Authorization', '')
    return hmac.compare_digest(header.encode(), f'Bearer {secret}'.encode())


@distribution.route('/cron/distribution', methods=['POST'])
def cron_distribution():
    if not _cron_authorized():
        return jsonify({'error': 'unauthorized'}), 401

    orchestrator = _orchestrator()
    if orchestrator.settings.paused:
        return _paused_response()

    period_key = previous_period_key()
    current_app.logger.info(f"[cron] triggering distribution period={period_key}")
    try:
        report = orchestrator.run(period_key)
    except AlreadyProcessed:
        return jsonify({
            'message': f'Distribution already processed for period {period_key}',
            'periodKey': period_key,
            'alreadyProcessed': True,
        })
    return jsonify(report.to_dict())
