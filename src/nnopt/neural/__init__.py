"""Networks, loss indices and the protocols the optimizers consume.

Key Components:
    - Network, LossIndex, DataSet: Collaborator protocols
    - NNXNetwork: Flat-parameter adapter around a Flax NNX module
    - LinearModel, MultilayerPerceptron: Reference NNX modules
    - SumSquaredError, MeanSquaredError: Squared-error loss indices
"""

from nnopt.neural.losses import MeanSquaredError, SquaredErrorBase, SumSquaredError
from nnopt.neural.network import LinearModel, MultilayerPerceptron, NNXNetwork
from nnopt.neural.protocols import (
    BackPropagation,
    Batch,
    DataSet,
    ForwardPropagation,
    LossIndex,
    Network,
)


__all__ = [
    "BackPropagation",
    "Batch",
    "DataSet",
    "ForwardPropagation",
    "LinearModel",
    "LossIndex",
    "MeanSquaredError",
    "MultilayerPerceptron",
    "NNXNetwork",
    "Network",
    "SquaredErrorBase",
    "SumSquaredError",
]
