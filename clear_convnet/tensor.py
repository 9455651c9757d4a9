# clear_convnet/tensor.py

"""
Dense 3D tensor with a co-located gradient buffer.

Every piece of data that moves through a network lives in a Tensor: the
activations handed from layer to layer, the filters and biases that layers
learn, and the gradients of the loss with respect to all of them.

A Tensor has a width (sx), a height (sy) and a depth. Values are stored in a
flat buffer `w`, gradients in a flat buffer `dw` of the same length, and a
cell (x, y, d) lives at index ((sx * y) + x) * depth + d. That is, row-major
over (y, x) with depth as the fastest-moving axis, so `w.reshape(sy, sx, depth)`
is a view on the same memory.
"""

from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np


class Tensor:
    """
    3D volume of numbers plus the gradient of the loss with respect to them.

    Args:
        sx: Width.
        sy: Height.
        depth: Depth.
        c: Constant to fill the values with. If None, values are drawn from a
           zero-mean Gaussian with std sqrt(1 / (sx * sy * depth)), which keeps
           the output variance of a neuron independent of its fan-in.
        rng: Generator used for the random fill. A fresh one is created when
             omitted.
    """

    def __init__(
        self,
        sx: int,
        sy: int,
        depth: int,
        c: Optional[float] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.sx = int(sx)
        self.sy = int(sy)
        self.depth = int(depth)
        n = self.sx * self.sy * self.depth

        self.dw = np.zeros(n)
        if c is None:
            if rng is None:
                rng = np.random.default_rng()
            scale = np.sqrt(1.0 / n) if n > 0 else 0.0
            self.w = rng.normal(0.0, scale, size=n)
        else:
            self.w = np.full(n, float(c))

    @classmethod
    def from_values(cls, values: Union[Sequence[float], np.ndarray]) -> 'Tensor':
        """Builds a 1x1xN tensor holding a copy of a flat list of numbers."""
        values = np.asarray(values, dtype=float).ravel()
        t = cls(1, 1, values.size, 0.0)
        t.w[:] = values
        return t

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.sx, self.sy, self.depth

    def _index(self, x: int, y: int, d: int) -> int:
        return ((self.sx * y) + x) * self.depth + d

    # --- Values ---

    def get(self, x: int, y: int, d: int) -> float:
        return self.w[self._index(x, y, d)]

    def set(self, x: int, y: int, d: int, v: float):
        self.w[self._index(x, y, d)] = v

    def add(self, x: int, y: int, d: int, v: float):
        self.w[self._index(x, y, d)] += v

    # --- Gradients ---

    def get_grad(self, x: int, y: int, d: int) -> float:
        return self.dw[self._index(x, y, d)]

    def set_grad(self, x: int, y: int, d: int, v: float):
        self.dw[self._index(x, y, d)] = v

    def add_grad(self, x: int, y: int, d: int, v: float):
        self.dw[self._index(x, y, d)] += v

    def zero_grad(self):
        """Zeroes the gradient buffer in place; views and references to `dw` stay valid."""
        self.dw[:] = 0.0

    # --- Spatial views ---

    def grid(self) -> np.ndarray:
        """(sy, sx, depth) view of the values; writes go through to `w`."""
        return self.w.reshape(self.sy, self.sx, self.depth)

    def grad_grid(self) -> np.ndarray:
        """(sy, sx, depth) view of the gradients; writes go through to `dw`."""
        return self.dw.reshape(self.sy, self.sx, self.depth)

    # --- Whole-tensor operations ---

    def clone_and_zero(self) -> 'Tensor':
        return Tensor(self.sx, self.sy, self.depth, 0.0)

    def clone(self) -> 'Tensor':
        """Deep copy of the values. The copy starts with zero gradients."""
        t = Tensor(self.sx, self.sy, self.depth, 0.0)
        t.w[:] = self.w
        return t

    def add_from(self, other: 'Tensor'):
        self.w += other.w

    def add_from_scaled(self, other: 'Tensor', a: float):
        self.w += a * other.w

    def set_const(self, a: float):
        self.w.fill(a)

    # --- Serialization ---

    def to_dict(self) -> Dict:
        """Shape and values only. Gradients are never persisted."""
        return {
            'sx': self.sx,
            'sy': self.sy,
            'depth': self.depth,
            'w': self.w.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Tensor':
        t = cls(data['sx'], data['sy'], data['depth'], 0.0)
        w = np.asarray(data['w'], dtype=float)
        if w.size != t.w.size:
            raise ValueError(
                f"Tensor data has {w.size} values, expected "
                f"{t.sx}x{t.sy}x{t.depth}={t.w.size}"
            )
        t.w[:] = w
        return t

    def __repr__(self):
        return f"Tensor(sx={self.sx}, sy={self.sy}, depth={self.depth})"
