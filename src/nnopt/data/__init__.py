"""Data sets for nnopt."""

from nnopt.data.dataset import InMemoryDataSet


__all__ = ["InMemoryDataSet"]
