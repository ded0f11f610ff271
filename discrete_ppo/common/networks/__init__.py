from .base_networks import BaseMLPNetwork, MLPFeaturesExtractor
from .discrete_policy import ACTION_MIN_PROB, ActionResult, BackpropResult, DiscretePolicy
from .value_networks import ValueNetwork

__all__ = [
    "ACTION_MIN_PROB",
    "ActionResult",
    "BackpropResult",
    "BaseMLPNetwork",
    "DiscretePolicy",
    "MLPFeaturesExtractor",
    "ValueNetwork",
]
