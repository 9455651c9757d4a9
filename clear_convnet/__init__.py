# clear_convnet/__init__.py

"""
clear_convnet: convolutional networks in plain NumPy, with every gradient
derived by hand.
"""

from .activations import (
    DropoutLayer,
    InputLayer,
    LocalResponseNormalizationLayer,
    MaxoutLayer,
    ReluLayer,
    SigmoidLayer,
    TanhLayer,
)
from .config import LayerDef, TrainerOptions
from .layers import ConvLayer, FullyConnLayer, Layer, ParamGroup, PoolLayer
from .losses import LossLayer, RegressionLayer, SoftmaxLayer, SVMLayer
from .network import LAYERS, Network
from .tensor import Tensor
from .trainer import Trainer

__all__ = [
    'Tensor',
    'LayerDef', 'TrainerOptions',
    'Layer', 'ParamGroup', 'ConvLayer', 'FullyConnLayer', 'PoolLayer',
    'InputLayer', 'ReluLayer', 'SigmoidLayer', 'TanhLayer', 'MaxoutLayer',
    'DropoutLayer', 'LocalResponseNormalizationLayer',
    'LossLayer', 'SoftmaxLayer', 'SVMLayer', 'RegressionLayer',
    'LAYERS', 'Network', 'Trainer',
]
