"""Payment module: dGPU transfers on Solana."""

from .transfer import KeypairWallet, TokenTransferSubmitter, WalletSigner, to_base_units

__all__ = [
    "KeypairWallet",
    "TokenTransferSubmitter",
    "WalletSigner",
    "to_base_units",
]
