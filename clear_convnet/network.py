# clear_convnet/network.py

"""
Sequential network: an ordered pipeline of layers built from declarative
layer definitions.

    net = Network([
        {'type': 'input', 'out_sx': 8, 'out_sy': 8, 'out_depth': 1},
        {'type': 'conv', 'sx': 3, 'filters': 4, 'activation': 'relu'},
        {'type': 'pool', 'sx': 2},
        {'type': 'softmax', 'num_classes': 10},
    ], rng=0)

Definitions are desugared before the layers are built: loss layers get the
fully connected layer in front of them that they almost always need, and
`activation` / `drop_prob` fields expand into their own layers. Each layer's
input shape is taken from the previous layer's output shape, so only the input
layer declares a shape.
"""

import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Type, Union

import numpy as np

from .activations import (
    DropoutLayer,
    InputLayer,
    LocalResponseNormalizationLayer,
    MaxoutLayer,
    ReluLayer,
    SigmoidLayer,
    TanhLayer,
)
from .config import LayerDef
from .layers import ConvLayer, FullyConnLayer, Layer, ParamGroup, PoolLayer
from .losses import LossLayer, RegressionLayer, SoftmaxLayer, SVMLayer
from .tensor import Tensor

# Dictionary mapping layer type tags to their classes
LAYERS: Dict[str, Type[Layer]] = {
    'input': InputLayer,
    'conv': ConvLayer,
    'pool': PoolLayer,
    'fc': FullyConnLayer,
    'relu': ReluLayer,
    'sigmoid': SigmoidLayer,
    'tanh': TanhLayer,
    'maxout': MaxoutLayer,
    'dropout': DropoutLayer,
    'lrn': LocalResponseNormalizationLayer,
    'softmax': SoftmaxLayer,
    'svm': SVMLayer,
    'regression': RegressionLayer,
}

LayerDefLike = Union[LayerDef, Dict[str, Any]]
RngLike = Union[None, int, np.random.Generator]


def desugar(defs: Sequence[LayerDef]) -> List[LayerDef]:
    """
    Expands convenience fields into explicit layer definitions.

    - softmax / svm get a preceding fc layer with num_classes (or num_neurons) neurons
    - regression gets a preceding fc layer with num_neurons (or num_classes) neurons
    - fc / conv without bias_pref get 0.1 when followed by a relu (so units
      start out active and receive gradient), 0.0 otherwise
    - `activation` appends the matching nonlinearity layer
    - `drop_prob` on a non-dropout layer appends a dropout layer

    Args:
        defs: Layer definitions in network order.

    Returns:
        A new list of definitions; the inputs are not modified.
    """
    new_defs: List[LayerDef] = []
    for defn in defs:
        if defn.type in ('softmax', 'svm'):
            new_defs.append(LayerDef(type='fc', num_neurons=defn.first_of('num_classes', 'num_neurons')))

        if defn.type == 'regression':
            new_defs.append(LayerDef(type='fc', num_neurons=defn.first_of('num_neurons', 'num_classes')))

        if defn.type in ('fc', 'conv') and defn.bias_pref is None:
            defn = replace(defn, bias_pref=0.1 if defn.activation == 'relu' else 0.0)

        new_defs.append(defn)

        if defn.activation == 'maxout':
            new_defs.append(LayerDef(type='maxout', group_size=defn.group_size))
        elif defn.activation is not None:
            new_defs.append(LayerDef(type=defn.activation))

        if defn.drop_prob is not None and defn.type != 'dropout':
            new_defs.append(LayerDef(type='dropout', drop_prob=defn.drop_prob))

    return new_defs


class Network:
    """
    Manages a linear sequence of layers: construction from definitions, the
    forward pass, the backward pass, parameter collection, prediction and
    persistence.

    The first layer is an input layer and the last one is a loss layer.
    """

    def __init__(self, layer_defs: Optional[Sequence[LayerDefLike]] = None, rng: RngLike = None):
        """
        Args:
            layer_defs: Optional layer definitions (dicts or LayerDef). When given,
                        the layers are built right away with make_layers.
            rng: Seed or numpy Generator used for weight initialization and dropout.
        """
        self.layers: List[Layer] = []
        if layer_defs is not None:
            self.make_layers(layer_defs, rng=rng)

    def make_layers(self, defs: Sequence[LayerDefLike], rng: RngLike = None):
        """
        Builds the layers from a list of definitions, replacing any existing ones.

        Args:
            defs: Layer definitions. At least two are required and the first must
                  be of type 'input'.
            rng: Seed or numpy Generator shared by all layers that draw random numbers.

        Raises:
            ValueError: On any configuration error (too few definitions, first
                        definition not an input, unknown type or activation,
                        missing required fields, shapes that do not fit).
        """
        defs = [LayerDef.coerce(d) for d in defs]
        if len(defs) < 2:
            raise ValueError("At least one input layer and one loss layer are required.")
        if defs[0].type != 'input':
            raise ValueError("First layer must be the input layer, to declare size of inputs.")

        rng = np.random.default_rng(rng)
        defs = desugar(defs)

        layers: List[Layer] = []
        for i, defn in enumerate(defs):
            if i > 0:
                prev = layers[i - 1]
                defn = replace(defn, in_sx=prev.out_sx, in_sy=prev.out_sy, in_depth=prev.out_depth)
            layer = LAYERS[defn.type].from_def(defn, rng=rng)
            logging.debug(f"Layer {i} ({defn.type}) output shape: {layer.out_shape}")
            layers.append(layer)

        self.layers = layers
        logging.info(f"Created network with layers: {[l.layer_type for l in self.layers]}")

    @property
    def input_shape(self):
        return self.layers[0].out_shape

    def _as_input(self, V: Union[Tensor, Sequence[float], np.ndarray]) -> Tensor:
        """Wraps array-like input in a Tensor of the input layer's shape."""
        if isinstance(V, Tensor):
            return V
        values = np.asarray(V, dtype=float)
        sx, sy, depth = self.input_shape
        if values.size != sx * sy * depth:
            raise ValueError(
                f"Input has {values.size} values, network expects {sx}x{sy}x{depth}"
            )
        # C-order (sy, sx, depth) arrays flatten straight into the Tensor layout
        T = Tensor(sx, sy, depth, 0.0)
        T.w[:] = values.ravel()
        return T

    def forward(self, V: Union[Tensor, Sequence[float], np.ndarray], is_training: bool = False) -> Tensor:
        """
        Performs a forward pass through all layers.

        Args:
            V: Input Tensor, or array-like holding input-shaped values.
            is_training: True when called by a trainer. Prediction mode otherwise,
                         which matters to layers such as dropout.

        Returns:
            The last layer's output Tensor.
        """
        act = self._as_input(V)
        for i, layer in enumerate(self.layers):
            act = layer.forward(act, is_training)
            logging.debug(f"Forward pass - Layer {i} ({layer.layer_type}) output shape: {act.shape}")
        return act

    def backward(self, y) -> float:
        """
        Backpropagates from the loss layer down to the input.

        The loss layer gets the target and seeds the gradient; every other layer
        then runs in strict reverse order, reading the gradient the layer above
        it just wrote.

        Args:
            y: Target for the loss layer (class index, or regression target).

        Returns:
            The loss for the current example.
        """
        last = self.layers[-1]
        if not isinstance(last, LossLayer):
            raise RuntimeError(
                f"backward requires a loss layer at the end of the network, found '{last.layer_type}'"
            )
        loss = last.backward(y)
        for layer in reversed(self.layers[:-1]):
            layer.backward()
        return loss

    def get_cost_loss(self, V: Union[Tensor, Sequence[float], np.ndarray], y) -> float:
        """Loss of the network on one example, computed in prediction mode."""
        self.forward(V, is_training=False)
        return self.layers[-1].backward(y)

    def get_params_and_grads(self) -> List[ParamGroup]:
        """All parameter groups, in layer order (filters then bias within a layer)."""
        groups: List[ParamGroup] = []
        for layer in self.layers:
            groups.extend(layer.get_params_and_grads())
        return groups

    def get_prediction(self) -> int:
        """
        Index of the class with the highest probability from the last forward pass.

        Raises:
            RuntimeError: If the last layer is not a softmax layer, or forward
                          has not been called yet.
        """
        S = self.layers[-1]
        if not isinstance(S, SoftmaxLayer):
            raise RuntimeError("get_prediction assumes softmax as the last layer of the network.")
        if S.out_act is None:
            raise RuntimeError("get_prediction called before forward.")
        return int(np.argmax(S.out_act.w))  # first index wins ties

    def num_parameters(self) -> int:
        return sum(group.params.size for group in self.get_params_and_grads())

    # --- Persistence ---

    def to_dict(self) -> Dict[str, Any]:
        return {'layers': [layer.to_dict() for layer in self.layers]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Network':
        """
        Rebuilds a network from its persisted descriptors. Gradients start at zero.

        Raises:
            ValueError: If a descriptor names an unknown layer type.
        """
        network = cls()
        for i, layer_data in enumerate(data['layers']):
            layer_type = layer_data.get('layer_type')
            if layer_type not in LAYERS:
                raise ValueError(f"Unrecognized layer type '{layer_type}' in descriptor {i}")
            network.layers.append(LAYERS[layer_type].from_dict(layer_data))
        return network

    def save(self, filename: str):
        """
        Saves the network architecture and weights to a JSON file.

        Args:
            filename: Path of the file to write. '.json' is recommended.
        """
        try:
            with open(filename, 'w') as f:
                json.dump(self.to_dict(), f)
            logging.info(f"Network saved to {filename}")
        except OSError as e:
            logging.error(f"Error saving network to {filename}: {e}")
            raise

    @classmethod
    def load(cls, filename: str) -> 'Network':
        """
        Loads a network saved with `save`.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is not a valid network description.
        """
        try:
            with open(filename) as f:
                data = json.load(f)
        except FileNotFoundError:
            logging.error(f"Network file not found: {filename}")
            raise
        except json.JSONDecodeError as e:
            logging.error(f"Error parsing network file {filename}: {e}")
            raise ValueError(f"Could not parse network file {filename}") from e

        try:
            network = cls.from_dict(data)
        except (KeyError, TypeError) as e:
            logging.error(f"Missing or malformed field in network file {filename}: {e}")
            raise ValueError(f"Incompatible or incomplete network file: {filename}") from e

        logging.info(f"Network loaded successfully from {filename}")
        return network

    def summary(self) -> str:
        """
        Generates a text summary of the network architecture and parameters.

        Returns:
            A string containing the network summary.
        """
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Network Summary\n"
        summary_str += "=" * 50 + "\n"
        total_params = 0
        for i, layer in enumerate(self.layers):
            layer_params = sum(g.params.size for g in layer.get_params_and_grads())
            total_params += layer_params
            summary_str += f"Layer {i}: {type(layer).__name__} ({layer.layer_type})\n"
            summary_str += f"  Output Shape: {layer.out_shape}\n"
            summary_str += f"  Parameters: {layer_params}\n"
            summary_str += "-" * 50 + "\n"
        summary_str += f"Total Parameters: {total_params}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str

    def __repr__(self):
        return f"Network(layers={[l.layer_type for l in self.layers]})"
