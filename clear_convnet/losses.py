# clear_convnet/losses.py

"""
Loss layers. A loss layer always sits at the end of a network; its backward
takes the target and returns the scalar loss, seeding the gradient that the
rest of the network propagates.

All three flatten their input: the output is (1, 1, num_inputs).
"""

from typing import Dict, Sequence, Union

import numpy as np

from .layers import Layer
from .tensor import Tensor

RegressionTarget = Union[float, Sequence[float], np.ndarray, Dict[str, float]]


class LossLayer(Layer):
    """Base class for layers whose backward consumes a target and returns the loss."""

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__()
        self.num_inputs = int(in_sx) * int(in_sy) * int(in_depth)
        self.out_sx = 1
        self.out_sy = 1
        self.out_depth = self.num_inputs

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(defn.in_sx, defn.in_sy, defn.in_depth)

    def backward(self, y) -> float:
        raise NotImplementedError("Each loss layer must implement backward(y).")

    def to_dict(self):
        data = super().to_dict()
        data['num_inputs'] = self.num_inputs
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(1, 1, data['num_inputs'])


class SoftmaxLayer(LossLayer):
    """
    Softmax classifier with cross-entropy loss.

    forward:  p_i = e^(x_i - max x) / sum_j e^(x_j - max x)
    backward: dL/dx_i = p_i - [i == y],  L = -log p_y
    """
    layer_type = 'softmax'

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__(in_sx, in_sy, in_depth)
        self.es = None

    def forward(self, V, is_training=False):
        self.in_act = V
        # Subtract the max for numerical stability
        es = np.exp(V.w - np.max(V.w))
        es /= np.sum(es)
        self.es = es
        A = Tensor(1, 1, self.out_depth, 0.0)
        A.w[:] = es
        self.out_act = A
        return A

    def backward(self, y):
        y = int(y)
        x = self.in_act
        indicator = np.zeros(self.out_depth)
        indicator[y] = 1.0
        x.dw[:] = -(indicator - self.es)
        # Clip to avoid log(0)
        return float(-np.log(max(self.es[y], 1e-15)))


class SVMLayer(LossLayer):
    """
    Multiclass hinge loss (Weston-Watkins) with margin 1. Forward is the identity.

    backward: for every i != y with x_i - x_y + 1 > 0,
              loss += x_i - x_y + 1, dL/dx_i += 1, dL/dx_y -= 1
    """
    layer_type = 'svm'

    margin = 1.0

    def forward(self, V, is_training=False):
        self.in_act = V
        self.out_act = V
        return V

    def backward(self, y):
        y = int(y)
        x = self.in_act
        x.zero_grad()
        ydiff = x.w - x.w[y] + self.margin
        ydiff[y] = 0.0
        violated = ydiff > 0
        x.dw[violated] += 1.0
        x.dw[y] -= np.count_nonzero(violated)
        return float(np.sum(ydiff[violated]))


class RegressionLayer(LossLayer):
    """
    L2 regression loss. Forward is the identity.

    The target may be:
        - a sequence with one value per output,
        - a single number, regressed by output 0,
        - a dict {'dim': i, 'val': v}, regressing only output i.
    Outputs without a target get zero gradient. L = 0.5 * sum (x_i - y_i)^2.
    """
    layer_type = 'regression'

    def forward(self, V, is_training=False):
        self.in_act = V
        self.out_act = V
        return V

    def backward(self, y: RegressionTarget) -> float:
        x = self.in_act
        x.zero_grad()
        if isinstance(y, dict):
            dims = np.array([int(y['dim'])])
            targets = np.array([float(y['val'])])
        elif np.ndim(y) == 0:
            dims = np.array([0])
            targets = np.array([float(y)])
        else:
            targets = np.asarray(y, dtype=float).ravel()
            if targets.size != self.out_depth:
                raise ValueError(
                    f"Regression target has {targets.size} values, expected {self.out_depth}"
                )
            dims = np.arange(self.out_depth)
        dy = x.w[dims] - targets
        x.dw[dims] = dy
        return float(0.5 * np.sum(dy * dy))
