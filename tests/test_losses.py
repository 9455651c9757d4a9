import numpy as np
import pytest

from clear_convnet import RegressionLayer, SoftmaxLayer, SVMLayer, Tensor


def test_softmax_outputs_probabilities():
    layer = SoftmaxLayer(1, 1, 3)
    out = layer.forward(Tensor.from_values([1.0, 2.0, 3.0]))
    e = np.exp([1.0, 2.0, 3.0])
    np.testing.assert_allclose(out.w, e / e.sum())
    assert out.w.sum() == pytest.approx(1.0)


def test_softmax_is_stable_for_large_inputs():
    layer = SoftmaxLayer(1, 1, 2)
    out = layer.forward(Tensor.from_values([1000.0, 1001.0]))
    assert np.all(np.isfinite(out.w))
    assert out.w[1] > out.w[0]


def test_softmax_backward_gradient_and_loss():
    layer = SoftmaxLayer(1, 1, 3)
    V = Tensor.from_values([0.5, -1.0, 2.0])
    p = layer.forward(V).w.copy()
    loss = layer.backward(1)
    assert loss == pytest.approx(-np.log(p[1]))
    np.testing.assert_allclose(V.dw, p - np.array([0.0, 1.0, 0.0]))


def test_softmax_flattens_input():
    layer = SoftmaxLayer(2, 2, 3)
    assert layer.out_shape == (1, 1, 12)
    assert layer.num_inputs == 12


def test_svm_hinge_loss_and_gradient():
    layer = SVMLayer(1, 1, 3)
    V = Tensor.from_values([1.0, 2.0, 0.5])
    assert layer.forward(V) is V
    loss = layer.backward(0)
    # margins: class 1 -> 2.0, class 2 -> 0.5
    assert loss == pytest.approx(2.5)
    np.testing.assert_allclose(V.dw, [-2.0, 1.0, 1.0])


def test_svm_zero_loss_when_margin_satisfied():
    layer = SVMLayer(1, 1, 3)
    V = Tensor.from_values([5.0, 1.0, 0.0])
    layer.forward(V)
    assert layer.backward(0) == 0.0
    np.testing.assert_array_equal(V.dw, [0.0, 0.0, 0.0])


def test_regression_with_vector_target():
    layer = RegressionLayer(1, 1, 2)
    V = Tensor.from_values([1.0, 3.0])
    layer.forward(V)
    loss = layer.backward([0.0, 1.0])
    assert loss == pytest.approx(0.5 * (1.0 + 4.0))
    np.testing.assert_allclose(V.dw, [1.0, 2.0])


def test_regression_with_dim_val_target_only_touches_that_output():
    layer = RegressionLayer(1, 1, 3)
    V = Tensor.from_values([1.0, 3.0, -2.0])
    layer.forward(V)
    loss = layer.backward({'dim': 1, 'val': 1.0})
    assert loss == pytest.approx(2.0)
    np.testing.assert_allclose(V.dw, [0.0, 2.0, 0.0])


def test_regression_with_scalar_target():
    layer = RegressionLayer(1, 1, 1)
    V = Tensor.from_values([0.5])
    layer.forward(V)
    assert layer.backward(1.5) == pytest.approx(0.5)
    np.testing.assert_allclose(V.dw, [-1.0])


def test_regression_target_size_mismatch_raises():
    layer = RegressionLayer(1, 1, 2)
    layer.forward(Tensor.from_values([1.0, 2.0]))
    with pytest.raises(ValueError):
        layer.backward([1.0, 2.0, 3.0])


@pytest.mark.parametrize('layer_cls', [SoftmaxLayer, SVMLayer, RegressionLayer])
def test_loss_layer_to_dict_round_trip(layer_cls):
    layer = layer_cls(1, 1, 4)
    restored = layer_cls.from_dict(layer.to_dict())
    assert restored.out_shape == (1, 1, 4)
    assert restored.layer_type == layer.layer_type
