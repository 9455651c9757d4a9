import logging

import numpy as np
import pytest

from clear_convnet import Tensor


@pytest.fixture(autouse=True)
def setup_logging():
    """Keep per-layer debug logging out of the test output."""
    logging.getLogger().setLevel(logging.INFO)
    yield
    logging.getLogger().setLevel(logging.NOTSET)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def random_tensor(rng):
    """Factory for tensors filled with standard normal values."""
    def make(sx, sy, depth):
        T = Tensor(sx, sy, depth, 0.0)
        T.w[:] = rng.normal(size=T.w.size)
        return T
    return make


def _numeric_grad(loss, arr, eps):
    grad = np.zeros_like(arr)
    for i in range(arr.size):
        old = arr[i]
        arr[i] = old + eps
        loss_plus = loss()
        arr[i] = old - eps
        loss_minus = loss()
        arr[i] = old
        grad[i] = (loss_plus - loss_minus) / (2 * eps)
    return grad


@pytest.fixture
def check_gradients(rng):
    """
    Compares a layer's analytic gradients with central finite differences.

    The scalar being differentiated is sum(out.w * R) for a fixed random R,
    so the chain gradient handed to backward is R itself.
    """
    def check(layer, V, eps=1e-5, rtol=1e-4, atol=1e-6):
        out = layer.forward(V, is_training=False)
        R = rng.normal(size=out.w.size)

        for group in layer.get_params_and_grads():
            group.grads[:] = 0.0
        out.dw[:] = R
        layer.backward()
        analytic_input = V.dw.copy()
        analytic_params = [group.grads.copy() for group in layer.get_params_and_grads()]

        def loss():
            return float(np.dot(layer.forward(V, is_training=False).w, R))

        np.testing.assert_allclose(analytic_input, _numeric_grad(loss, V.w, eps),
                                   rtol=rtol, atol=atol)
        for group, analytic in zip(layer.get_params_and_grads(), analytic_params):
            np.testing.assert_allclose(analytic, _numeric_grad(loss, group.params, eps),
                                       rtol=rtol, atol=atol)
    return check
