# clear_convnet/activations.py

"""
Parameter-free layers that transform activations in place of shape:
the input passthrough, elementwise nonlinearities, maxout, dropout and
local response normalization.

All of them keep the (sx, sy) extent of their input. Only maxout changes the
depth.
"""

import logging

import numpy as np

from .layers import Layer
from .tensor import Tensor


class InputLayer(Layer):
    """
    First layer of every network. Declares the input shape and hands the
    input Tensor on unchanged.
    """
    layer_type = 'input'

    def __init__(self, out_sx, out_sy, out_depth):
        super().__init__()
        self.out_sx = int(out_sx)
        self.out_sy = int(out_sy)
        self.out_depth = int(out_depth)

    @classmethod
    def from_def(cls, defn, rng=None):
        # A fully specified input shape may also arrive through in_* fields
        out_sx = defn.out_sx if defn.out_sx is not None else defn.in_sx
        out_sy = defn.out_sy if defn.out_sy is not None else defn.in_sy
        out_depth = defn.out_depth if defn.out_depth is not None else defn.in_depth
        if None in (out_sx, out_sy, out_depth):
            raise ValueError("'input' layer definition requires out_sx, out_sy and out_depth")
        return cls(out_sx, out_sy, out_depth)

    def forward(self, V, is_training=False):
        self.in_act = V
        self.out_act = V
        return V

    def backward(self):
        pass

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'])


class _ElementwiseLayer(Layer):
    """Shape-preserving layer; output (sx, sy, depth) equals the input's."""

    def __init__(self, in_sx, in_sy, in_depth):
        super().__init__()
        self.out_sx = int(in_sx)
        self.out_sy = int(in_sy)
        self.out_depth = int(in_depth)

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(defn.in_sx, defn.in_sy, defn.in_depth)

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'])


class ReluLayer(_ElementwiseLayer):
    """Rectified Linear Unit.

    Mathematical form:
        forward: f(x) = max(0, x)
        backward: f'(x) = 1 if f(x) > 0 else 0
    """
    layer_type = 'relu'

    def forward(self, V, is_training=False):
        self.in_act = V
        A = V.clone()
        A.w[A.w < 0] = 0.0
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        A = self.out_act
        V.dw[:] = np.where(A.w <= 0, 0.0, A.dw)


class SigmoidLayer(_ElementwiseLayer):
    """Logistic sigmoid.

    Mathematical form:
        forward: f(x) = 1 / (1 + e^-x)
        backward: f'(x) = f(x) * (1 - f(x))
    """
    layer_type = 'sigmoid'

    def forward(self, V, is_training=False):
        self.in_act = V
        A = V.clone_and_zero()
        # Clip to avoid overflow in exp(-x) for large negative x
        A.w[:] = 1.0 / (1.0 + np.exp(-np.clip(V.w, -500, 500)))
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        A = self.out_act
        V.dw[:] = A.w * (1.0 - A.w) * A.dw


class TanhLayer(_ElementwiseLayer):
    """Hyperbolic tangent.

    Mathematical form:
        forward: f(x) = tanh(x)
        backward: f'(x) = 1 - f(x)^2
    """
    layer_type = 'tanh'

    def forward(self, V, is_training=False):
        self.in_act = V
        A = V.clone_and_zero()
        A.w[:] = np.tanh(V.w)
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        A = self.out_act
        V.dw[:] = (1.0 - A.w * A.w) * A.dw


class MaxoutLayer(Layer):
    """
    Maxout: each output depth slice is the max over `group_size` consecutive
    input depth slices. Trailing input slices that do not fill a group are
    ignored.

    The winning input depth of every output cell is kept in `switches` so the
    backward pass can route the gradient there.
    """
    layer_type = 'maxout'

    def __init__(self, in_sx, in_sy, in_depth, group_size=2):
        super().__init__()
        self.group_size = int(group_size)
        self.in_depth = int(in_depth)
        self.out_sx = int(in_sx)
        self.out_sy = int(in_sy)
        self.out_depth = self.in_depth // self.group_size
        if self.out_depth == 0:
            raise ValueError(
                f"Maxout group_size {self.group_size} is larger than input depth {self.in_depth}"
            )
        self.switches = np.zeros(self.out_sx * self.out_sy * self.out_depth, dtype=np.int64)

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(defn.in_sx, defn.in_sy, defn.in_depth, group_size=defn.group_size)

    def forward(self, V, is_training=False):
        self.in_act = V
        used = self.out_depth * self.group_size
        groups = V.grid()[:, :, :used].reshape(V.sy, V.sx, self.out_depth, self.group_size)
        win = np.argmax(groups, axis=3)  # first maximum in the group wins
        A = Tensor(self.out_sx, self.out_sy, self.out_depth, 0.0)
        A.grid()[:] = np.take_along_axis(groups, win[..., np.newaxis], axis=3)[..., 0]
        # Absolute input depth of each winner
        switches = win + np.arange(self.out_depth) * self.group_size
        self.switches = switches.ravel()
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        V.zero_grad()
        switches = self.switches.reshape(V.sy, V.sx, self.out_depth)
        np.put_along_axis(V.grad_grid(), switches, self.out_act.grad_grid(), axis=2)

    def to_dict(self):
        data = super().to_dict()
        data['group_size'] = self.group_size
        data['in_depth'] = self.in_depth
        return data

    @classmethod
    def from_dict(cls, data):
        group_size = data.get('group_size', 2)
        in_depth = data.get('in_depth', data['out_depth'] * group_size)
        return cls(data['out_sx'], data['out_sy'], in_depth, group_size=group_size)


class DropoutLayer(_ElementwiseLayer):
    """
    Dropout. In training mode every unit is zeroed with probability
    `drop_prob` and the mask is kept for backward. In prediction mode nothing
    is dropped and outputs are scaled by (1 - drop_prob), the expected fraction
    of units kept during training.
    """
    layer_type = 'dropout'

    def __init__(self, in_sx, in_sy, in_depth, drop_prob=0.5, rng=None):
        super().__init__(in_sx, in_sy, in_depth)
        if not 0.0 <= drop_prob < 1.0:
            raise ValueError(f"drop_prob must be in [0, 1), got {drop_prob}")
        self.drop_prob = float(drop_prob)
        self.rng = rng if rng is not None else np.random.default_rng()
        self.dropped = np.zeros(self.out_sx * self.out_sy * self.out_depth, dtype=bool)

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(defn.in_sx, defn.in_sy, defn.in_depth, drop_prob=defn.drop_prob, rng=rng)

    def forward(self, V, is_training=False):
        self.in_act = V
        A = V.clone()
        if is_training:
            self.dropped = self.rng.random(A.w.size) < self.drop_prob
            A.w[self.dropped] = 0.0
        else:
            self.dropped = np.zeros(A.w.size, dtype=bool)
            A.w *= 1.0 - self.drop_prob
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        V.dw[:] = np.where(self.dropped, 0.0, self.out_act.dw)

    def to_dict(self):
        data = super().to_dict()
        data['drop_prob'] = self.drop_prob
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'],
                   drop_prob=data.get('drop_prob', 0.5))


def _depth_window_sum(values, half):
    """Sum over depth window [i - half, i + half] (clipped) along the last axis."""
    depth = values.shape[-1]
    csum = np.concatenate(
        [np.zeros(values.shape[:-1] + (1,)), np.cumsum(values, axis=-1)], axis=-1
    )
    i = np.arange(depth)
    lo = np.maximum(0, i - half)
    hi = np.minimum(depth - 1, i + half) + 1
    return csum[..., hi] - csum[..., lo]


class LocalResponseNormalizationLayer(_ElementwiseLayer):
    """
    Local response normalization across depth (Krizhevsky et al. 2012).

    Mathematical form, with a window of n neighbouring depth slices:
        S_i     = k + alpha / n * sum_{j in window(i)} a_j^2
        out_i   = a_i / S_i^beta
        d out_i / d a_j = [i == j] / S_i^beta
                          - 2 * alpha * beta / n * a_i * a_j / S_i^(beta + 1)
    """
    layer_type = 'lrn'

    def __init__(self, in_sx, in_sy, in_depth, k=2.0, n=5, alpha=1e-4, beta=0.75):
        super().__init__(in_sx, in_sy, in_depth)
        self.k = float(k)
        self.n = int(n)
        self.alpha = float(alpha)
        self.beta = float(beta)
        if self.n % 2 == 0:
            logging.warning(f"LRN window n={self.n} should be odd; the window is centered on "
                            f"i with {self.n // 2} slices either side.")
        self.S_cache = None

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(defn.in_sx, defn.in_sy, defn.in_depth,
                   k=defn.k, n=defn.n, alpha=defn.alpha, beta=defn.beta)

    def forward(self, V, is_training=False):
        self.in_act = V
        a = V.grid()
        S = self.k + self.alpha / self.n * _depth_window_sum(a * a, self.n // 2)
        self.S_cache = S
        A = V.clone_and_zero()
        A.grid()[:] = a / S ** self.beta
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        V.zero_grad()
        a = V.grid()
        g = self.out_act.grad_grid()
        S = self.S_cache
        # The window is symmetric, so summing over outputs i that see input j
        # uses the same window around j
        coupled = _depth_window_sum(g * a * S ** (-self.beta - 1.0), self.n // 2)
        V.grad_grid()[:] = (g * S ** -self.beta
                            - 2.0 * self.alpha * self.beta / self.n * a * coupled)

    def to_dict(self):
        data = super().to_dict()
        data.update({'k': self.k, 'n': self.n, 'alpha': self.alpha, 'beta': self.beta})
        return data

    @classmethod
    def from_dict(cls, data):
        return cls(data['out_sx'], data['out_sy'], data['out_depth'],
                   k=data['k'], n=data['n'], alpha=data['alpha'], beta=data['beta'])
