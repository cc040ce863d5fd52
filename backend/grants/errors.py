"""Errors raised by the distribution engine.

Each error knows its HTTP status and renders to a JSON payload with a
machine-checkable ``error`` field; the app factory registers a single handler
for the base class.
"""


class DistributionError(Exception):
    """Base class for errors surfaced to API callers."""

    error = 'distribution failed'
    status_code = 500

    def __init__(self, message=None, **context):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.context = context

    def to_dict(self):
        payload = {'error': self.error, 'message': self.message}
        payload.update(self.context)
        return payload


class ConfigurationError(DistributionError):
    """Funding wallet, signing key or gateway missing."""

    error = 'not configured'
    status_code = 400

    def __init__(self, message=None):
        super().__init__(
            message or 'Distribution system not ready. Configure FUNDING_WALLET and FUNDING_PRIVATE_KEY.',
            ready=False,
        )


class AlreadyProcessed(DistributionError):
    error = 'already exists'
    status_code = 409

    def __init__(self, period_key):
        super().__init__(f'Distribution already exists for period {period_key}', existing=True, periodKey=period_key)
        self.period_key = period_key


class InsufficientFunds(DistributionError):
    error = 'insufficient funds'
    status_code = 400

    def __init__(self, required, available, asset):
        super().__init__(
            f'Insufficient {asset.upper()} balance. Required: {required}, available: {available}',
            required=float(required),
            available=float(available),
            asset=asset,
        )
        self.required = required
        self.available = available


class StoreWriteError(DistributionError):
    """A ledger insert/update failed; the phase that failed is not retried."""

    error = 'store write failed'
    status_code = 500

    def __init__(self, phase, details):
        super().__init__(f'Ledger write failed during {phase}', phase=phase, details=str(details))
        self.phase = phase


class InvalidPeriod(DistributionError):
    error = 'invalid period'
    status_code = 400

    def __init__(self, value, reason='Use YYYY-MM-DD of a Monday'):
        super().__init__(f'Invalid period {value!r}: {reason}', period=value)


class GatewayUnavailable(DistributionError):
    """The funding balance could not be read from the chain."""

    error = 'gateway unavailable'
    status_code = 502

    def __init__(self, details):
        super().__init__('Could not read the funding wallet balance', details=str(details))


class RunInProgress(DistributionError):
    """Another caller is paying this period's records right now."""

    error = 'in progress'
    status_code = 409

    def __init__(self, period_key):
        super().__init__(f'Distribution for period {period_key} is already being paid', inProgress=True, periodKey=period_key)
        self.period_key = period_key
