# clear_convnet/layers.py

"""
Trainable and spatial layers: convolution, fully connected, max pooling.

Every layer follows the same calling convention:

    out = layer.forward(V, is_training)   # V and out are Tensors
    layer.backward()                      # reads out.dw, writes V.dw and param grads

The output Tensor of one layer is the very same object the next layer receives
as input. During backward the next layer fills that Tensor's gradient buffer,
and this layer reads it (the "chain gradient") to push gradients one step
further back. Values of a received Tensor are never modified.

Loops run over output cells in (depth, row, column) order; the work inside a
receptive field is done with NumPy slices over (sy, sx, depth) views of the
flat buffers. Padding is never materialized: the part of a receptive field
that falls outside the input is simply sliced away.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import LayerDef
from .tensor import Tensor


@dataclass(eq=False)
class ParamGroup:
    """One unit of optimization: a parameter buffer, its gradient and decay multipliers."""
    params: np.ndarray
    grads: np.ndarray
    l1_decay_mul: float = 0.0
    l2_decay_mul: float = 1.0


def output_size(in_size: int, filter_size: int, stride: int, pad: int) -> int:
    """
    Number of filter applications along one axis.

    Floor division, so a strided filter that does not fit exactly drops its
    final partial application and the output is trimmed.
    """
    return (in_size + 2 * pad - filter_size) // stride + 1


def receptive_fields(out_size: int, stride: int, pad: int,
                     filter_size: int, in_size: int) -> List[Tuple[int, int, int]]:
    """
    For each output position along one axis, returns (start, f0, f1):
    `start` is the input coordinate of filter offset 0 (may be negative),
    and [f0, f1) is the range of filter offsets that land inside the input.
    """
    fields = []
    for a in range(out_size):
        start = a * stride - pad
        f0 = max(0, -start)
        f1 = max(f0, min(filter_size, in_size - start))
        fields.append((start, f0, f1))
    return fields


# --- Base Layer Class ---
class Layer:
    """
    Base class for all layers.

    Subclasses set `layer_type`, their output shape (out_sx, out_sy, out_depth)
    and implement forward/backward. Parameter-free layers inherit the empty
    get_params_and_grads.
    """
    layer_type = None

    def __init__(self):
        self.in_act: Optional[Tensor] = None   # input seen by the last forward
        self.out_act: Optional[Tensor] = None  # output produced by the last forward
        self.out_sx = 0
        self.out_sy = 0
        self.out_depth = 0

    def forward(self, V: Tensor, is_training: bool = False) -> Tensor:
        """Performs the forward pass for the layer."""
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def backward(self):
        """
        Performs the backward pass for the layer.
        Reads the gradient on out_act and writes gradients into in_act and params.
        """
        raise NotImplementedError("Each layer must implement its own backward pass.")

    def get_params_and_grads(self) -> List[ParamGroup]:
        return []

    @property
    def out_shape(self) -> Tuple[int, int, int]:
        return self.out_sx, self.out_sy, self.out_depth

    def to_dict(self) -> Dict:
        return {
            'layer_type': self.layer_type,
            'out_sx': self.out_sx,
            'out_sy': self.out_sy,
            'out_depth': self.out_depth,
        }

    @classmethod
    def from_def(cls, defn: LayerDef, rng: Optional[np.random.Generator] = None) -> 'Layer':
        raise NotImplementedError

    @classmethod
    def from_dict(cls, data: Dict) -> 'Layer':
        raise NotImplementedError

    def __repr__(self):
        return (f"{type(self).__name__}(out_sx={self.out_sx}, out_sy={self.out_sy}, "
                f"out_depth={self.out_depth})")


# --- Convolutional Layer ---

class ConvLayer(Layer):
    """
    2D convolution over a (in_sx, in_sy, in_depth) input.

    Owns `filters` filter Tensors of shape (sx, sy, in_depth), one per output
    depth slice, and a (1, 1, out_depth) bias Tensor.

    Output size: out_sx = floor((in_sx + 2*pad - sx) / stride) + 1, same for y.
    """
    layer_type = 'conv'

    def __init__(self, in_sx, in_sy, in_depth, sx, filters, sy=None, stride=1, pad=0,
                 l1_decay_mul=0.0, l2_decay_mul=1.0, bias_pref=0.0, rng=None):
        super().__init__()
        self.in_sx = int(in_sx)
        self.in_sy = int(in_sy)
        self.in_depth = int(in_depth)
        self.sx = int(sx)  # filter size, odd sizes are cleanest
        self.sy = int(sy) if sy is not None else self.sx
        self.stride = int(stride)
        self.pad = int(pad)
        self.l1_decay_mul = float(l1_decay_mul)
        self.l2_decay_mul = float(l2_decay_mul)

        self.out_depth = int(filters)
        self.out_sx = output_size(self.in_sx, self.sx, self.stride, self.pad)
        self.out_sy = output_size(self.in_sy, self.sy, self.stride, self.pad)
        if self.out_sx <= 0 or self.out_sy <= 0:
            raise ValueError(
                f"Conv filter {self.sx}x{self.sy} (stride {self.stride}, pad {self.pad}) "
                f"does not fit input {self.in_sx}x{self.in_sy}"
            )

        if rng is None:
            rng = np.random.default_rng()
        self.filters = [Tensor(self.sx, self.sy, self.in_depth, rng=rng)
                        for _ in range(self.out_depth)]
        self.biases = Tensor(1, 1, self.out_depth, bias_pref)

        logging.debug(
            f"ConvLayer created: in=({self.in_sx}, {self.in_sy}, {self.in_depth}), "
            f"filter={self.sx}x{self.sy}x{self.out_depth}, stride={self.stride}, pad={self.pad}, "
            f"out=({self.out_sx}, {self.out_sy}, {self.out_depth})"
        )

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth', 'sx')
        return cls(
            in_sx=defn.in_sx, in_sy=defn.in_sy, in_depth=defn.in_depth,
            sx=defn.sx, sy=defn.sy, filters=defn.first_of('filters', 'out_depth'),
            stride=defn.stride, pad=defn.pad,
            l1_decay_mul=defn.l1_decay_mul, l2_decay_mul=defn.l2_decay_mul,
            bias_pref=defn.bias_pref if defn.bias_pref is not None else 0.0,
            rng=rng,
        )

    def _fields(self, V):
        rows = receptive_fields(self.out_sy, self.stride, self.pad, self.sy, V.sy)
        cols = receptive_fields(self.out_sx, self.stride, self.pad, self.sx, V.sx)
        return rows, cols

    def forward(self, V, is_training=False):
        """
        A[ax, ay, d] = biases[d] + sum over the in-range receptive field of
                       filters[d][fx, fy, fd] * V[ox, oy, fd]
        """
        self.in_act = V
        A = Tensor(self.out_sx, self.out_sy, self.out_depth, 0.0)
        V_grid = V.grid()
        A_grid = A.grid()
        rows, cols = self._fields(V)

        for d, f in enumerate(self.filters):
            f_grid = f.grid()
            bias = self.biases.w[d]
            for ay, (y, fy0, fy1) in enumerate(rows):
                for ax, (x, fx0, fx1) in enumerate(cols):
                    kernel = f_grid[fy0:fy1, fx0:fx1, :]
                    a_slice = V_grid[y + fy0:y + fy1, x + fx0:x + fx1, :]
                    A_grid[ay, ax, d] = np.sum(kernel * a_slice) + bias

        self.out_act = A
        return A

    def backward(self):
        """
        For every output cell with chain gradient g:
            filters[d].dw[fx, fy, fd] += V.w[ox, oy, fd] * g
            V.dw[ox, oy, fd]          += filters[d].w[fx, fy, fd] * g
            biases.dw[d]              += g
        Receptive fields overlap when stride < filter size, so a single input
        cell collects gradient from several output cells.
        """
        V = self.in_act
        V.zero_grad()  # about to be filled from scratch
        V_grid = V.grid()
        dV_grid = V.grad_grid()
        dA_grid = self.out_act.grad_grid()
        rows, cols = self._fields(V)

        for d, f in enumerate(self.filters):
            f_grid = f.grid()
            df_grid = f.grad_grid()
            for ay, (y, fy0, fy1) in enumerate(rows):
                for ax, (x, fx0, fx1) in enumerate(cols):
                    chain_grad = dA_grid[ay, ax, d]
                    in_rows = slice(y + fy0, y + fy1)
                    in_cols = slice(x + fx0, x + fx1)
                    df_grid[fy0:fy1, fx0:fx1, :] += V_grid[in_rows, in_cols, :] * chain_grad
                    dV_grid[in_rows, in_cols, :] += f_grid[fy0:fy1, fx0:fx1, :] * chain_grad
                    self.biases.dw[d] += chain_grad

    def get_params_and_grads(self):
        groups = [ParamGroup(f.w, f.dw, self.l1_decay_mul, self.l2_decay_mul)
                  for f in self.filters]
        groups.append(ParamGroup(self.biases.w, self.biases.dw, 0.0, 0.0))
        return groups

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'sx': self.sx,
            'sy': self.sy,
            'stride': self.stride,
            'pad': self.pad,
            'in_sx': self.in_sx,
            'in_sy': self.in_sy,
            'in_depth': self.in_depth,
            'l1_decay_mul': self.l1_decay_mul,
            'l2_decay_mul': self.l2_decay_mul,
            'filters': [f.to_dict() for f in self.filters],
            'biases': self.biases.to_dict(),
        })
        return data

    @classmethod
    def from_dict(cls, data):
        filters = [Tensor.from_dict(f) for f in data['filters']]
        sx, sy = data['sx'], data['sy']
        stride, pad = data['stride'], data.get('pad', 0)
        # Older descriptors carry only the output shape; invert the size formula
        in_sx = data.get('in_sx', (data['out_sx'] - 1) * stride + sx - 2 * pad)
        in_sy = data.get('in_sy', (data['out_sy'] - 1) * stride + sy - 2 * pad)
        layer = cls(in_sx=in_sx, in_sy=in_sy, in_depth=data['in_depth'],
                    sx=sx, sy=sy, filters=len(filters), stride=stride, pad=pad,
                    l1_decay_mul=data.get('l1_decay_mul', 0.0),
                    l2_decay_mul=data.get('l2_decay_mul', 1.0))
        layer.filters = filters
        layer.biases = Tensor.from_dict(data['biases'])
        return layer


# --- Fully Connected Layer ---

class FullyConnLayer(Layer):
    """
    Fully connected layer: every output neuron sees the whole input flattened.

    Equivalent to a convolution whose filter covers the entire input, so the
    output is always (1, 1, num_neurons). Filters are (1, 1, num_inputs) with
    num_inputs = in_sx * in_sy * in_depth.
    """
    layer_type = 'fc'

    def __init__(self, in_sx, in_sy, in_depth, num_neurons,
                 l1_decay_mul=0.0, l2_decay_mul=1.0, bias_pref=0.0, rng=None):
        super().__init__()
        self.in_sx = int(in_sx)
        self.in_sy = int(in_sy)
        self.in_depth = int(in_depth)
        self.num_inputs = self.in_sx * self.in_sy * self.in_depth
        self.l1_decay_mul = float(l1_decay_mul)
        self.l2_decay_mul = float(l2_decay_mul)

        self.out_sx = 1
        self.out_sy = 1
        self.out_depth = int(num_neurons)

        if rng is None:
            rng = np.random.default_rng()
        self.filters = [Tensor(1, 1, self.num_inputs, rng=rng) for _ in range(self.out_depth)]
        self.biases = Tensor(1, 1, self.out_depth, bias_pref)

        logging.debug(
            f"FullyConnLayer created: num_inputs={self.num_inputs}, num_neurons={self.out_depth}"
        )

    @classmethod
    def from_def(cls, defn, rng=None):
        num_neurons = defn.first_of('num_neurons', 'num_classes', 'filters')
        defn.require('in_sx', 'in_sy', 'in_depth')
        return cls(
            in_sx=defn.in_sx, in_sy=defn.in_sy, in_depth=defn.in_depth,
            num_neurons=num_neurons,
            l1_decay_mul=defn.l1_decay_mul, l2_decay_mul=defn.l2_decay_mul,
            bias_pref=defn.bias_pref if defn.bias_pref is not None else 0.0,
            rng=rng,
        )

    def forward(self, V, is_training=False):
        self.in_act = V
        A = Tensor(1, 1, self.out_depth, 0.0)
        for i, f in enumerate(self.filters):
            A.w[i] = np.dot(V.w, f.w) + self.biases.w[i]
        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        V.zero_grad()
        for i, f in enumerate(self.filters):
            chain_grad = self.out_act.dw[i]
            V.dw += f.w * chain_grad   # grad wrt input data
            f.dw += V.w * chain_grad   # grad wrt params
            self.biases.dw[i] += chain_grad

    def get_params_and_grads(self):
        groups = [ParamGroup(f.w, f.dw, self.l1_decay_mul, self.l2_decay_mul)
                  for f in self.filters]
        groups.append(ParamGroup(self.biases.w, self.biases.dw, 0.0, 0.0))
        return groups

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'num_inputs': self.num_inputs,
            'in_sx': self.in_sx,
            'in_sy': self.in_sy,
            'in_depth': self.in_depth,
            'l1_decay_mul': self.l1_decay_mul,
            'l2_decay_mul': self.l2_decay_mul,
            'filters': [f.to_dict() for f in self.filters],
            'biases': self.biases.to_dict(),
        })
        return data

    @classmethod
    def from_dict(cls, data):
        filters = [Tensor.from_dict(f) for f in data['filters']]
        if 'in_depth' in data:
            in_shape = (data['in_sx'], data['in_sy'], data['in_depth'])
        else:
            in_shape = (1, 1, data['num_inputs'])
        layer = cls(*in_shape, num_neurons=len(filters),
                    l1_decay_mul=data.get('l1_decay_mul', 0.0),
                    l2_decay_mul=data.get('l2_decay_mul', 1.0))
        layer.filters = filters
        layer.biases = Tensor.from_dict(data['biases'])
        return layer


# --- Pooling Layer ---

class PoolLayer(Layer):
    """
    Max pooling over sx x sy windows, independently per depth slice.

    Forward records, for every output cell, the input (x, y) that held the
    maximum (`switchx`, `switchy`, indexed like the output's flat buffer).
    Backward hands each output cell's gradient to exactly that input cell.
    Windows are scanned column by column (x outer, y inner) and only a strictly
    greater value replaces the current winner, so ties go to the first cell
    scanned.
    """
    layer_type = 'pool'

    def __init__(self, in_sx, in_sy, in_depth, sx, sy=None, stride=2, pad=0):
        super().__init__()
        self.in_sx = int(in_sx)
        self.in_sy = int(in_sy)
        self.in_depth = int(in_depth)
        self.sx = int(sx)
        self.sy = int(sy) if sy is not None else self.sx
        self.stride = int(stride)
        self.pad = int(pad)

        self.out_depth = self.in_depth
        self.out_sx = output_size(self.in_sx, self.sx, self.stride, self.pad)
        self.out_sy = output_size(self.in_sy, self.sy, self.stride, self.pad)
        if self.out_sx <= 0 or self.out_sy <= 0:
            raise ValueError(
                f"Pool window {self.sx}x{self.sy} (stride {self.stride}, pad {self.pad}) "
                f"does not fit input {self.in_sx}x{self.in_sy}"
            )

        n = self.out_sx * self.out_sy * self.out_depth
        self.switchx = np.zeros(n, dtype=np.int64)
        self.switchy = np.zeros(n, dtype=np.int64)

        logging.debug(
            f"PoolLayer created: in=({self.in_sx}, {self.in_sy}, {self.in_depth}), "
            f"window={self.sx}x{self.sy}, stride={self.stride}, "
            f"out=({self.out_sx}, {self.out_sy}, {self.out_depth})"
        )

    @classmethod
    def from_def(cls, defn, rng=None):
        defn.require('in_sx', 'in_sy', 'in_depth', 'sx')
        return cls(in_sx=defn.in_sx, in_sy=defn.in_sy, in_depth=defn.in_depth,
                   sx=defn.sx, sy=defn.sy, stride=defn.stride, pad=defn.pad)

    def forward(self, V, is_training=False):
        self.in_act = V
        A = Tensor(self.out_sx, self.out_sy, self.out_depth, 0.0)
        V_grid = V.grid()
        A_grid = A.grid()
        depth = np.arange(self.out_depth)
        rows = receptive_fields(self.out_sy, self.stride, self.pad, self.sy, V.sy)
        cols = receptive_fields(self.out_sx, self.stride, self.pad, self.sx, V.sx)

        # Recomputed every pass; the previous switches are stale
        self.switchx = np.full(self.out_sx * self.out_sy * self.out_depth, -1, dtype=np.int64)
        self.switchy = np.full_like(self.switchx, -1)

        for ay, (y, fy0, fy1) in enumerate(rows):
            for ax, (x, fx0, fx1) in enumerate(cols):
                h, w = fy1 - fy0, fx1 - fx0
                if h == 0 or w == 0:
                    continue  # window entirely in the padding: output stays 0
                window = V_grid[y + fy0:y + fy1, x + fx0:x + fx1, :]
                # Column-major scan order, one column of the window per x
                scan = window.transpose(1, 0, 2).reshape(w * h, self.out_depth)
                win = np.argmax(scan, axis=0)  # first maximum wins
                n = ((self.out_sx * ay) + ax) * self.out_depth + depth
                self.switchx[n] = x + fx0 + win // h
                self.switchy[n] = y + fy0 + win % h
                A_grid[ay, ax, :] = scan[win, depth]

        self.out_act = A
        return A

    def backward(self):
        V = self.in_act
        V.zero_grad()
        routed = self.switchx >= 0
        d = np.arange(self.switchx.size) % self.out_depth
        # add.at accumulates when overlapping windows share a winner
        np.add.at(V.grad_grid(),
                  (self.switchy[routed], self.switchx[routed], d[routed]),
                  self.out_act.dw[routed])

    def to_dict(self):
        data = super().to_dict()
        data.update({
            'sx': self.sx,
            'sy': self.sy,
            'stride': self.stride,
            'pad': self.pad,
            'in_sx': self.in_sx,
            'in_sy': self.in_sy,
            'in_depth': self.in_depth,
        })
        return data

    @classmethod
    def from_dict(cls, data):
        sx, sy = data['sx'], data['sy']
        stride, pad = data['stride'], data.get('pad', 0)
        in_sx = data.get('in_sx', (data['out_sx'] - 1) * stride + sx - 2 * pad)
        in_sy = data.get('in_sy', (data['out_sy'] - 1) * stride + sy - 2 * pad)
        return cls(in_sx=in_sx, in_sy=in_sy, in_depth=data['in_depth'],
                   sx=sx, sy=sy, stride=stride, pad=pad)
