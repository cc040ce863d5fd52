"""Weekly reward distribution: calculator, lifetime cap, gateway, orchestrator.

HTTP routes, CLI commands and socket handlers build an orchestrator through
``build_orchestrator`` and never read distribution config themselves.
"""

from .gateway import build_gateway
from .orchestrator import WeeklyDistributionOrchestrator
from .settings import DistributionSettings


def build_orchestrator(app) -> WeeklyDistributionOrchestrator:
    """Orchestrator for ``app``; a gateway in ``app.extensions['transfer_gateway']`` wins over config."""
    settings = DistributionSettings.from_config(app.config)
    gateway = app.extensions.get('transfer_gateway')
    if gateway is None:
        gateway = build_gateway(settings)
    return WeeklyDistributionOrchestrator(settings, gateway=gateway)
