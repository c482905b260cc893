"""Refgraph CLI: version orchestration across a graph of interdependent modules."""

__version__ = "0.3.0"
