"""Stellar integration components."""

from pagepay.stellar.chain import StellarChainClient, stroops_to_xlm, xlm_to_stroops

__all__ = ["StellarChainClient", "stroops_to_xlm", "xlm_to_stroops"]
