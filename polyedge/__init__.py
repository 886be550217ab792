"""PolyEdge: self-improving paper-trading core for BTC prediction markets."""

__version__ = "0.1.0"
