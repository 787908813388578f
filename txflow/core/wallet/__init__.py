"""
Wallet backends.

Every backend implements WalletInterface and refuses to sign for a
different address or chain than the one it is connected to.
"""

from .base import WalletInterface
from .injected import EIP1193Provider, InjectedWallet, ProviderRpcError
from .local import LocalAccountWallet

__all__ = [
    "WalletInterface",
    "LocalAccountWallet",
    "InjectedWallet",
    "EIP1193Provider",
    "ProviderRpcError",
]
