# clear_convnet/trainer.py

"""
Trainer: one-example-at-a-time optimization of a Network.

Every call to `train` runs a forward and a backward pass, letting parameter
gradients accumulate. Every `batch_size` calls the accumulated gradients are
turned into a parameter update with the configured method and reset to zero.

Per-parameter optimizer state (`gsum`, and `xsum` for adadelta) is kept as one
buffer per parameter group, in the order Network.get_params_and_grads returns
them.
"""

import logging
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Union

import numpy as np

from .config import TrainerOptions
from .network import Network
from .tensor import Tensor


class Trainer:
    """
    Trains a Network with sgd (optionally with momentum), adagrad, windowgrad,
    adadelta or nesterov updates, plus optional L1/L2 weight decay.

    Usage:
        trainer = Trainer(net, method='adadelta', batch_size=10, l2_decay=0.001)
        stats = trainer.train(x, label)
    """

    def __init__(self, net: Network, options: Optional[Union[TrainerOptions, Dict[str, Any]]] = None,
                 **kwargs):
        """
        Args:
            net: The network to train. Its parameters are updated in place.
            options: A TrainerOptions, or a dict of its fields.
            **kwargs: Individual option overrides, e.g. learning_rate=0.1.

        Raises:
            ValueError: On an unknown method, unknown option or non-positive batch_size.
        """
        if options is None:
            options = {}
        if isinstance(options, TrainerOptions):
            options = asdict(options)
        self.options = TrainerOptions.from_dict({**options, **kwargs})
        self.net = net

        self.k = 0  # iteration counter
        self.gsum: List[np.ndarray] = []  # last iteration gradients (used for momentum calculations)
        self.xsum: List[np.ndarray] = []  # used in adadelta
        self._layout: Optional[List[int]] = None
        self._param_buffers: List[np.ndarray] = []  # buffers the accumulators belong to

        logging.info(
            f"Trainer created: method={self.options.method}, "
            f"learning_rate={self.options.learning_rate}, batch_size={self.options.batch_size}"
        )

    # Shorthand accessors for the hot path
    @property
    def method(self) -> str:
        return self.options.method

    @property
    def learning_rate(self) -> float:
        return self.options.learning_rate

    @property
    def batch_size(self) -> int:
        return self.options.batch_size

    def _needs_state(self) -> bool:
        return self.method != 'sgd' or self.options.momentum > 0.0

    def _ensure_state(self, groups):
        """Allocates gsum/xsum on first use and checks they still match the network."""
        layout = [group.params.size for group in groups]
        if self._layout is None:
            self.gsum = [np.zeros(n) for n in layout]
            if self.method == 'adadelta':
                self.xsum = [np.zeros(n) for n in layout]
            self._layout = layout
            self._param_buffers = [group.params for group in groups]
            logging.debug(f"Allocated optimizer state for {len(layout)} parameter groups")
        elif layout != self._layout:
            raise RuntimeError(
                f"Network parameter layout changed since optimizer state was allocated "
                f"({len(self._layout)} groups -> {len(layout)} groups); create a new Trainer"
            )
        elif any(group.params is not buf for group, buf in zip(groups, self._param_buffers)):
            raise RuntimeError(
                "Network parameters were replaced since optimizer state was allocated "
                "(layers rebuilt or reloaded); create a new Trainer"
            )

    def train(self, x: Union[Tensor, np.ndarray], y) -> Dict[str, float]:
        """
        Runs one training example through the network, updating the parameters
        at the end of each batch.

        Args:
            x: Input Tensor (or array-like of the network's input shape).
            y: Target passed to the loss layer.

        Returns:
            A dict with fwd_time and bwd_time (milliseconds), l1_decay_loss,
            l2_decay_loss, cost_loss, softmax_loss and loss (cost plus decay).
            Decay losses are only non-zero on update steps.
        """
        start = time.perf_counter()
        self.net.forward(x, is_training=True)
        fwd_time = (time.perf_counter() - start) * 1000.0

        start = time.perf_counter()
        cost_loss = self.net.backward(y)
        bwd_time = (time.perf_counter() - start) * 1000.0

        l1_decay_loss = 0.0
        l2_decay_loss = 0.0

        self.k += 1
        if self.k % self.batch_size == 0:
            l1_decay_loss, l2_decay_loss = self._update()

        return {
            'fwd_time': fwd_time,
            'bwd_time': bwd_time,
            'l2_decay_loss': l2_decay_loss,
            'l1_decay_loss': l1_decay_loss,
            'cost_loss': cost_loss,
            'softmax_loss': cost_loss,
            'loss': cost_loss + l1_decay_loss + l2_decay_loss,
        }

    def _update(self):
        """Applies one parameter update from the accumulated gradients. Returns (l1, l2) decay loss."""
        opts = self.options
        groups = self.net.get_params_and_grads()
        if self._needs_state():
            self._ensure_state(groups)

        l1_decay_loss = 0.0
        l2_decay_loss = 0.0
        lr = opts.learning_rate
        momentum = opts.momentum
        ro = opts.ro
        eps = opts.eps

        for i, group in enumerate(groups):
            p = group.params
            g = group.grads
            l1_decay = opts.l1_decay * group.l1_decay_mul
            l2_decay = opts.l2_decay * group.l2_decay_mul

            l2_decay_loss += float(l2_decay * np.sum(p * p) / 2)
            l1_decay_loss += float(l1_decay * np.sum(np.abs(p)))
            l1grad = l1_decay * np.where(p > 0, 1.0, -1.0)
            l2grad = l2_decay * p
            gij = (l2grad + l1grad + g) / self.batch_size

            if self.method == 'adagrad':
                gsumi = self.gsum[i]
                gsumi += gij * gij
                p += -lr / np.sqrt(gsumi + eps) * gij
            elif self.method == 'windowgrad':
                # Like adagrad, but over a moving window of recent gradients
                gsumi = self.gsum[i]
                gsumi[:] = ro * gsumi + (1 - ro) * gij * gij
                p += -lr / np.sqrt(gsumi + eps) * gij
            elif self.method == 'adadelta':
                gsumi = self.gsum[i]
                xsumi = self.xsum[i]
                gsumi[:] = ro * gsumi + (1 - ro) * gij * gij
                dx = -np.sqrt((xsumi + eps) / (gsumi + eps)) * gij
                xsumi[:] = ro * xsumi + (1 - ro) * dx * dx
                p += dx
            elif self.method == 'nesterov':
                gsumi = self.gsum[i]
                dx = gsumi.copy()
                gsumi[:] = gsumi * momentum + lr * gij
                dx = momentum * dx - (1.0 + momentum) * gsumi
                p += dx
            elif momentum > 0.0:
                # sgd with momentum
                gsumi = self.gsum[i]
                dx = momentum * gsumi - lr * gij
                gsumi[:] = dx
                p += dx
            else:
                # vanilla sgd
                p += -lr * gij

            g[:] = 0.0  # zero out gradient so that we can begin accumulating anew

        logging.debug(f"Update {self.k // self.batch_size} applied to {len(groups)} parameter groups")
        return l1_decay_loss, l2_decay_loss
