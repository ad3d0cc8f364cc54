"""
Wallet state: extended keys, UTXO models, sync, coin selection and building.
"""

from wowallet.wallet.bip32 import ExtendedPublicKey
from wowallet.wallet.models import CoinSelectionPlan, LedgerSnapshot, UTXOInfo

__all__ = ["ExtendedPublicKey", "CoinSelectionPlan", "LedgerSnapshot", "UTXOInfo"]
