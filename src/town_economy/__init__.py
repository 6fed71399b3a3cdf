"""Town economy core: AMM market, world events, market pulse and paid skills."""

__version__ = "0.1.0"
