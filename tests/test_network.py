import json

import numpy as np
import pytest

from clear_convnet import LayerDef, Network, Tensor
from clear_convnet.network import desugar


@pytest.fixture
def conv_defs():
    return [
        {'type': 'input', 'out_sx': 8, 'out_sy': 8, 'out_depth': 1},
        {'type': 'conv', 'sx': 3, 'filters': 4, 'pad': 1, 'activation': 'relu'},
        {'type': 'pool', 'sx': 2},
        {'type': 'fc', 'num_neurons': 6, 'activation': 'tanh', 'drop_prob': 0.2},
        {'type': 'softmax', 'num_classes': 3},
    ]


@pytest.fixture
def conv_net(conv_defs):
    return Network(conv_defs, rng=0)


def test_desugar_expands_convenience_fields(conv_defs):
    types = [d.type for d in desugar([LayerDef.from_dict(d) for d in conv_defs])]
    assert types == ['input', 'conv', 'relu', 'pool', 'fc', 'tanh', 'dropout', 'fc', 'softmax']


def test_desugar_loss_layers_get_fc_in_front():
    defs = desugar([LayerDef(type='svm', num_classes=4), LayerDef(type='regression', num_neurons=2)])
    assert [(d.type, d.num_neurons) for d in defs] == [
        ('fc', 4), ('svm', None), ('fc', 2), ('regression', 2)]


def test_desugar_maxout_activation_carries_group_size():
    defs = desugar([LayerDef(type='fc', num_neurons=6, activation='maxout', group_size=3)])
    assert [d.type for d in defs] == ['fc', 'maxout']
    assert defs[1].group_size == 3


def test_desugar_does_not_modify_input():
    defn = LayerDef(type='conv', sx=3, filters=2, activation='relu')
    desugar([defn])
    assert defn.bias_pref is None


def test_bias_preference_defaults(conv_net):
    conv, fc = conv_net.layers[1], conv_net.layers[4]
    np.testing.assert_array_equal(conv.biases.w, [0.1] * 4)
    np.testing.assert_array_equal(fc.biases.w, [0.0] * 6)


def test_explicit_bias_preference_wins():
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'fc', 'num_neurons': 3, 'activation': 'relu', 'bias_pref': 0.5},
        {'type': 'softmax', 'num_classes': 2},
    ])
    np.testing.assert_array_equal(net.layers[1].biases.w, [0.5] * 3)


def test_shapes_are_wired_from_layer_to_layer(conv_net):
    shapes = [layer.out_shape for layer in conv_net.layers]
    assert shapes == [
        (8, 8, 1),   # input
        (8, 8, 4),   # conv
        (8, 8, 4),   # relu
        (4, 4, 4),   # pool
        (1, 1, 6),   # fc
        (1, 1, 6),   # tanh
        (1, 1, 6),   # dropout
        (1, 1, 3),   # fc
        (1, 1, 3),   # softmax
    ]
    assert conv_net.layers[4].num_inputs == 64


def test_input_aliases():
    net = Network([
        {'type': 'input', 'width': 3, 'height': 2, 'depth': 4},
        {'type': 'regression', 'num_neurons': 1},
    ])
    assert net.input_shape == (3, 2, 4)


def test_same_seed_builds_same_weights(conv_defs):
    a = Network(conv_defs, rng=3)
    b = Network(conv_defs, rng=3)
    np.testing.assert_array_equal(a.layers[1].filters[0].w, b.layers[1].filters[0].w)


@pytest.mark.parametrize('defs', [
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2}],
    [{'type': 'fc', 'num_neurons': 2}, {'type': 'softmax', 'num_classes': 2}],
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2}, {'type': 'bogus'}],
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
     {'type': 'fc', 'num_neurons': 2, 'activation': 'softplus'}],
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2}, {'type': 'softmax'}],
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
     {'type': 'fc', 'num_neurons': 2, 'colour': 'red'}],
    [{'type': 'input', 'out_sx': 1, 'out_sy': 1}, {'type': 'softmax', 'num_classes': 2}],
    [{'type': 'input', 'out_sx': 2, 'out_sy': 2, 'out_depth': 1},
     {'type': 'conv', 'sx': 3, 'filters': 1}, {'type': 'softmax', 'num_classes': 2}],
], ids=['too-few', 'no-input', 'unknown-type', 'bad-activation', 'missing-num-classes',
        'unknown-field', 'incomplete-input', 'filter-too-large'])
def test_invalid_definitions_raise(defs):
    with pytest.raises(ValueError):
        Network(defs)


def test_forward_returns_class_probabilities(conv_net, random_tensor):
    out = conv_net.forward(random_tensor(8, 8, 1))
    assert out.shape == (1, 1, 3)
    assert out.w.sum() == pytest.approx(1.0)


def test_forward_accepts_array_input():
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 3},
        {'type': 'softmax', 'num_classes': 2},
    ], rng=0)
    a = net.forward([0.1, 0.2, 0.3]).w.copy()
    b = net.forward(Tensor.from_values([0.1, 0.2, 0.3])).w
    np.testing.assert_allclose(a, b)


def test_forward_rejects_wrong_input_size(conv_net):
    with pytest.raises(ValueError):
        conv_net.forward(np.zeros(10))


def test_forward_in_prediction_mode_is_deterministic(conv_net, random_tensor):
    V = random_tensor(8, 8, 1)
    a = conv_net.forward(V).w.copy()
    b = conv_net.forward(V).w
    np.testing.assert_allclose(a, b)


def test_get_prediction_is_argmax(conv_net, random_tensor):
    out = conv_net.forward(random_tensor(8, 8, 1))
    assert conv_net.get_prediction() == int(np.argmax(out.w))


def test_get_prediction_requires_softmax():
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'regression', 'num_neurons': 1},
    ])
    net.forward([1.0, 2.0])
    with pytest.raises(RuntimeError):
        net.get_prediction()


def test_backward_requires_loss_layer():
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'fc', 'num_neurons': 2},
    ])
    net.forward([1.0, 2.0])
    with pytest.raises(RuntimeError):
        net.backward(0)


def test_backward_returns_loss_and_fills_param_grads(conv_net, random_tensor):
    net = conv_net
    net.forward(random_tensor(8, 8, 1), is_training=True)
    p = net.layers[-1].out_act.w.copy()
    loss = net.backward(2)
    assert loss == pytest.approx(-np.log(p[2]))
    assert any(np.any(g.grads != 0.0) for g in net.get_params_and_grads())


def test_get_cost_loss(random_tensor):
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'softmax', 'num_classes': 2},
    ], rng=0)
    V = Tensor.from_values([0.3, -0.7])
    p = net.forward(V).w.copy()
    assert net.get_cost_loss(V, 1) == pytest.approx(-np.log(p[1]))


def test_param_groups_and_count():
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        {'type': 'fc', 'num_neurons': 3},
        {'type': 'softmax', 'num_classes': 2},
    ])
    groups = net.get_params_and_grads()
    # 3 filters + bias, then 2 filters + bias
    assert [g.params.size for g in groups] == [2, 2, 2, 3, 3, 3, 2]
    assert net.num_parameters() == 17
    assert "Total Parameters: 17" in net.summary()


def test_to_dict_is_json_serializable(conv_net):
    data = json.loads(json.dumps(conv_net.to_dict()))
    assert [d['layer_type'] for d in data['layers']] == [l.layer_type for l in conv_net.layers]


def test_save_and_load_round_trip(conv_net, random_tensor, tmp_path):
    path = tmp_path / 'net.json'
    conv_net.save(str(path))
    restored = Network.load(str(path))
    assert [l.layer_type for l in restored.layers] == [l.layer_type for l in conv_net.layers]
    V = random_tensor(8, 8, 1)
    np.testing.assert_allclose(restored.forward(V).w, conv_net.forward(V).w)
    for group in restored.get_params_and_grads():
        assert np.all(group.grads == 0.0)


def test_restored_network_keeps_dropout_probability(conv_net):
    restored = Network.from_dict(conv_net.to_dict())
    assert restored.layers[6].drop_prob == pytest.approx(0.2)


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Network.load(str(tmp_path / 'missing.json'))


def test_load_invalid_json_raises(tmp_path):
    path = tmp_path / 'bad.json'
    path.write_text('{not json')
    with pytest.raises(ValueError):
        Network.load(str(path))


def test_load_incomplete_descriptor_raises(tmp_path):
    path = tmp_path / 'partial.json'
    path.write_text(json.dumps({'layers': [{'layer_type': 'fc'}]}))
    with pytest.raises(ValueError):
        Network.load(str(path))


def test_from_dict_rejects_unknown_layer_type():
    with pytest.raises(ValueError):
        Network.from_dict({'layers': [{'layer_type': 'mystery'}]})


@pytest.mark.parametrize('size_def, expected_depth', [
    ({'type': 'conv', 'sx': 3, 'out_depth': 4}, 4),
    ({'type': 'conv', 'sx': 3, 'filters': 5}, 5),
    ({'type': 'fc', 'num_classes': 6}, 6),
    ({'type': 'fc', 'filters': 7}, 7),
], ids=['conv-out_depth', 'conv-filters', 'fc-num_classes', 'fc-filters'])
def test_layer_size_aliases(size_def, expected_depth):
    net = Network([
        {'type': 'input', 'out_sx': 4, 'out_sy': 4, 'out_depth': 1},
        size_def,
        {'type': 'softmax', 'num_classes': 2},
    ], rng=0)
    assert net.layers[1].out_depth == expected_depth


@pytest.mark.parametrize('loss_def, expected_fc', [
    ({'type': 'softmax', 'num_neurons': 3}, 3),
    ({'type': 'svm', 'num_neurons': 4}, 4),
    ({'type': 'regression', 'num_classes': 2}, 2),
], ids=['softmax-num_neurons', 'svm-num_neurons', 'regression-num_classes'])
def test_loss_layer_size_aliases(loss_def, expected_fc):
    net = Network([
        {'type': 'input', 'out_sx': 1, 'out_sy': 1, 'out_depth': 2},
        loss_def,
    ], rng=0)
    assert [l.layer_type for l in net.layers] == ['input', 'fc', loss_def['type']]
    assert net.layers[1].out_depth == expected_fc
    assert net.layers[2].out_shape == (1, 1, expected_fc)


def test_conv_without_any_filter_count_raises():
    with pytest.raises(ValueError):
        Network([
            {'type': 'input', 'out_sx': 4, 'out_sy': 4, 'out_depth': 1},
            {'type': 'conv', 'sx': 3},
            {'type': 'softmax', 'num_classes': 2},
        ])
