from .layer import NormalizeLossLayer, create_layer, layer_types, register_layer
from .gradcheck import GradCheckReport, check_gradient

__all__ = [
    "NormalizeLossLayer",
    "create_layer",
    "layer_types",
    "register_layer",
    "GradCheckReport",
    "check_gradient",
]
