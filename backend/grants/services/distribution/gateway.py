"""Funding wallet balance checks and on-chain transfers.

Two variants share one contract: ``get_balance()`` and
``transfer(recipient, amount) -> tx hash`` raising :class:`TransferError`.
The orchestrator only ever sees :data:`TransferOutcome` values.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Union

from web3 import Web3

from .settings import DistributionSettings

logger = logging.getLogger(__name__)

NATIVE_TRANSFER_GAS = 21000

ERC20_ABI = [
    {"type": "function", "stateMutability": "view", "name": "balanceOf",
     "inputs": [{"name": "account", "type": "address"}], "outputs": [{"type": "uint256"}]},
    {"type": "function", "stateMutability": "nonpayable", "name": "transfer",
     "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"type": "bool"}]},
]


class TransferError(Exception):
    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


@dataclass(frozen=True)
class TransferSuccess:
    tx_hash: str
    ok = True


@dataclass(frozen=True)
class TransferFailure:
    reason: str
    tx_hash: Optional[str] = None
    ok = False


TransferOutcome = Union[TransferSuccess, TransferFailure]


@dataclass(frozen=True)
class Balance:
    raw: int
    decimals: int
    symbol: str

    @property
    def amount(self) -> Decimal:
        return Decimal(self.raw).scaleb(-self.decimals)

    @property
    def formatted(self) -> str:
        return f'{self.amount:.6f}'

    @property
    def sufficient(self) -> bool:
        return self.raw > 0

    def to_dict(self):
        return {
            'raw': str(self.raw),
            'formatted': self.formatted,
            'symbol': self.symbol,
            'sufficient': self.sufficient,
        }


def scale_amount(amount, decimals: int) -> int:
    """Currency units to integer base units, never rounding up."""
    return int((Decimal(str(amount)).scaleb(decimals)).to_integral_value(rounding=ROUND_DOWN))


class TransferGateway:
    """Interface the orchestrator pays through."""

    symbol = ''
    decimals = 0

    def get_balance(self) -> Balance:
        raise NotImplementedError

    def transfer(self, recipient: str, amount: Decimal) -> str:
        raise NotImplementedError


class Web3Gateway(TransferGateway):
    def __init__(self, settings: DistributionSettings, web3: Optional[Web3] = None):
        self.settings = settings
        self.timeout = settings.transfer_timeout
        self.web3 = web3 or Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={'timeout': self.timeout}))
        self.funding_address = Web3.to_checksum_address(settings.funding_address)
        self.account = self.web3.eth.account.from_key(settings.private_key)

    def _recipient(self, recipient: str) -> str:
        if not Web3.is_address(recipient):
            raise TransferError(f'Invalid recipient address {recipient}')
        return Web3.to_checksum_address(recipient)

    def _base_tx(self) -> dict:
        return {
            'from': self.funding_address,
            'nonce': self.web3.eth.get_transaction_count(self.funding_address, 'pending'),
            'chainId': self.settings.chain_id,
            'gasPrice': self.web3.eth.gas_price,
        }

    def _send(self, tx: dict) -> str:
        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(self.web3.eth.send_raw_transaction(signed.raw_transaction))
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except Exception as exc:
            raise TransferError(f'No receipt within {self.timeout}s: {exc}', tx_hash=tx_hash) from exc
        if receipt['status'] != 1:
            raise TransferError('Transaction reverted', tx_hash=tx_hash)
        return tx_hash

    def transfer(self, recipient: str, amount: Decimal) -> str:
        to = self._recipient(recipient)
        try:
            tx = self._build_transfer(to, scale_amount(amount, self.decimals))
            return self._send(tx)
        except TransferError:
            raise
        except Exception as exc:
            raise TransferError(str(exc) or exc.__class__.__name__) from exc

    def _build_transfer(self, to: str, raw_amount: int) -> dict:
        raise NotImplementedError


class NativeTransferGateway(Web3Gateway):
    symbol = 'ETH'
    decimals = 18

    def get_balance(self) -> Balance:
        raw = self.web3.eth.get_balance(self.funding_address)
        return Balance(raw=int(raw), decimals=self.decimals, symbol=self.symbol)

    def _build_transfer(self, to: str, raw_amount: int) -> dict:
        tx = self._base_tx()
        tx.update({'to': to, 'value': raw_amount, 'gas': NATIVE_TRANSFER_GAS})
        return tx


class TokenTransferGateway(Web3Gateway):
    symbol = 'USDC'

    def __init__(self, settings: DistributionSettings, web3: Optional[Web3] = None):
        super().__init__(settings, web3)
        self.decimals = settings.token_decimals
        self.contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(settings.token_address),
            abi=ERC20_ABI,
        )

    def get_balance(self) -> Balance:
        raw = self.contract.functions.balanceOf(self.funding_address).call()
        return Balance(raw=int(raw), decimals=self.decimals, symbol=self.symbol)

    def _build_transfer(self, to: str, raw_amount: int) -> dict:
        return self.contract.functions.transfer(to, raw_amount).build_transaction(self._base_tx())


def build_gateway(settings: DistributionSettings) -> Optional[TransferGateway]:
    """Gateway for the configured asset, or None while the funding wallet is unset."""
    if not settings.system_ready:
        return None
    if settings.is_token:
        if not settings.token_address:
            logger.warning('[gateway] token distribution configured without a contract address')
            return None
        return TokenTransferGateway(settings)
    return NativeTransferGateway(settings)
