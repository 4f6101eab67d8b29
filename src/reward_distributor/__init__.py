"""Reward Distributor - periodic holder reward cycles with co-signed claims."""

__version__ = "0.1.0"
