"""dGPU Market - AI agents rented by the hour, paid in dGPU on Solana."""

__version__ = "0.1.0"
