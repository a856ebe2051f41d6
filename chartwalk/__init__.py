"""Incremental renderer for trees of Argo CD applications."""

__version__ = "0.1.0"
