# clear_convnet/config.py

"""
Configuration structs for building networks and trainers.

Layer definitions are usually written as plain dicts, e.g.

    {'type': 'conv', 'sx': 5, 'filters': 8, 'stride': 1, 'activation': 'relu'}

`LayerDef.from_dict` turns such a dict into a LayerDef with every default
applied, so layer constructors never have to ask whether a field was given.
"""

from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Optional, Union

LAYER_TYPES = (
    'input', 'conv', 'pool', 'fc', 'relu', 'sigmoid', 'tanh', 'maxout',
    'dropout', 'lrn', 'softmax', 'svm', 'regression',
)

ACTIVATION_TYPES = ('relu', 'sigmoid', 'tanh', 'maxout')

TRAINER_METHODS = ('sgd', 'adagrad', 'windowgrad', 'adadelta', 'nesterov')

# Friendlier names accepted for the input layer shape
_INPUT_ALIASES = {'width': 'out_sx', 'height': 'out_sy', 'depth': 'out_depth'}


@dataclass
class LayerDef:
    """
    Declarative description of one layer.

    Fields left as None are either genuinely optional (activation, drop_prob,
    bias_pref) or filled in by the network while wiring (in_sx, in_sy,
    in_depth). Everything else carries its default once the object exists.
    """
    type: str

    # Input shape, filled in from the previous layer by Network.make_layers
    in_sx: Optional[int] = None
    in_sy: Optional[int] = None
    in_depth: Optional[int] = None

    # Declared output shape (input layer only)
    out_sx: Optional[int] = None
    out_sy: Optional[int] = None
    out_depth: Optional[int] = None

    # conv / pool geometry
    sx: Optional[int] = None
    sy: Optional[int] = None
    stride: Optional[int] = None
    pad: int = 0
    filters: Optional[int] = None

    # fc / loss layers
    num_neurons: Optional[int] = None
    num_classes: Optional[int] = None

    # Convenience sugar expanded by the network
    activation: Optional[str] = None
    drop_prob: Optional[float] = None
    bias_pref: Optional[float] = None

    l1_decay_mul: float = 0.0
    l2_decay_mul: float = 1.0

    # maxout
    group_size: int = 2

    # local response normalization
    k: float = 2.0
    n: int = 5
    alpha: float = 1e-4
    beta: float = 0.75

    def __post_init__(self):
        if self.type not in LAYER_TYPES:
            raise ValueError(
                f"Unrecognized layer type '{self.type}'. Valid types: {list(LAYER_TYPES)}"
            )
        if self.activation is not None and self.activation not in ACTIVATION_TYPES:
            raise ValueError(
                f"Unsupported activation '{self.activation}' on '{self.type}' layer. "
                f"Valid activations: {list(ACTIVATION_TYPES)}"
            )
        if self.sy is None:
            self.sy = self.sx
        if self.stride is None:
            self.stride = 2 if self.type == 'pool' else 1
        if self.type == 'dropout' and self.drop_prob is None:
            self.drop_prob = 0.5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LayerDef':
        """Builds a LayerDef from a plain dict, rejecting unknown keys."""
        data = dict(data)
        if 'type' not in data:
            raise ValueError(f"Layer definition is missing 'type': {data}")
        if data['type'] == 'input':
            for alias, name in _INPUT_ALIASES.items():
                if alias in data:
                    data.setdefault(name, data.pop(alias))
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(
                f"Unknown fields {sorted(unknown)} in '{data['type']}' layer definition"
            )
        return cls(**data)

    @classmethod
    def coerce(cls, value: Union['LayerDef', Dict[str, Any]]) -> 'LayerDef':
        if isinstance(value, cls):
            return value
        return cls.from_dict(value)

    def require(self, *names: str):
        """Raises ValueError if any of the named fields is still None."""
        missing = [name for name in names if getattr(self, name) is None]
        if missing:
            raise ValueError(f"'{self.type}' layer definition requires {missing}")

    def first_of(self, *names: str):
        """Value of the first named field that is set; the names are accepted aliases."""
        for name in names:
            value = getattr(self, name)
            if value is not None:
                return value
        raise ValueError(f"'{self.type}' layer definition requires one of {list(names)}")

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class TrainerOptions:
    """
    Trainer hyperparameters.

    method: one of 'sgd', 'adagrad', 'windowgrad', 'adadelta', 'nesterov'.
    momentum is used by sgd and nesterov; ro and eps by the adaptive methods
    (eps also conditions adagrad and windowgrad).
    """
    method: str = 'sgd'
    learning_rate: float = 0.01
    l1_decay: float = 0.0
    l2_decay: float = 0.0
    batch_size: int = 1
    momentum: float = 0.9
    ro: float = 0.95
    eps: float = 1e-6

    def __post_init__(self):
        if self.method not in TRAINER_METHODS:
            raise ValueError(
                f"Unknown trainer method '{self.method}'. Valid methods: {list(TRAINER_METHODS)}"
            )
        if int(self.batch_size) <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        self.batch_size = int(self.batch_size)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrainerOptions':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown trainer options {sorted(unknown)}")
        return cls(**data)
