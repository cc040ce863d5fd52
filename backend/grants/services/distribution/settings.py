from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

ZERO_ADDRESS = '0x' + '0' * 40

ASSET_PRESETS = {
    'usdc': {'top_n': 5, 'budget': '100.00', 'lifetime_cap': '100.00', 'amount_places': 2},
    'eth': {'top_n': 3, 'budget': '0.017', 'lifetime_cap': '0.1', 'amount_places': 6},
}


@dataclass(frozen=True)
class DistributionSettings:
    """Everything the orchestrator and gateways need, resolved once from config."""

    asset: str = 'usdc'
    budget: Decimal = Decimal('100.00')
    top_n: int = 5
    min_points: int = 100
    lifetime_cap: Decimal = Decimal('100.00')
    amount_places: int = 2
    funding_address: str = ''
    private_key: str = ''
    rpc_url: str = ''
    chain_id: int = 8453
    token_address: Optional[str] = None
    token_decimals: int = 6
    transfer_timeout: int = 120
    paused: bool = False

    @property
    def is_token(self) -> bool:
        return self.asset != 'eth'

    @property
    def funding_configured(self) -> bool:
        return bool(self.funding_address) and self.funding_address.lower() != ZERO_ADDRESS

    @property
    def key_configured(self) -> bool:
        key = self.private_key or ''
        return key.startswith('0x') and len(key) == 66

    @property
    def system_ready(self) -> bool:
        return self.funding_configured and self.key_configured

    @classmethod
    def from_config(cls, config) -> 'DistributionSettings':
        asset = (config.get('DISTRIBUTION_ASSET') or 'usdc').lower()
        if asset not in ASSET_PRESETS:
            raise ValueError(f'Unsupported DISTRIBUTION_ASSET {asset!r}')
        preset = ASSET_PRESETS[asset]

        def pick(key, preset_key):
            value = config.get(key)
            return preset[preset_key] if value in (None, '') else value

        return cls(
            asset=asset,
            budget=Decimal(str(pick('WEEKLY_BUDGET', 'budget'))),
            top_n=int(pick('TOP_N', 'top_n')),
            min_points=int(config.get('MIN_POINTS_THRESHOLD', 100)),
            lifetime_cap=Decimal(str(pick('LIFETIME_CAP', 'lifetime_cap'))),
            amount_places=int(pick('AMOUNT_PLACES', 'amount_places')),
            funding_address=config.get('FUNDING_WALLET') or '',
            private_key=config.get('FUNDING_PRIVATE_KEY') or '',
            rpc_url=config.get('CHAIN_RPC_URL') or '',
            chain_id=int(config.get('CHAIN_ID', 8453)),
            token_address=config.get('USDC_CONTRACT_ADDRESS') if asset == 'usdc' else None,
            token_decimals=int(config.get('USDC_DECIMALS', 6)),
            transfer_timeout=int(config.get('TRANSFER_TIMEOUT_SEC', 120)),
            paused=bool(config.get('PAUSE_DISTRIBUTIONS', False)),
        )
