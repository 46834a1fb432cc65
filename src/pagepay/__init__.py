"""pagepay - prepaid reading credits, content unlocks and batched author payouts."""

__version__ = "0.1.0"
