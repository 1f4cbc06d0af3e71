"""
Optimisers - Registry & Unified Export
======================================

All optimisers follow the standard torch.optim.Optimizer interface.
Use ``get_optimiser(name, params, **kwargs)`` to instantiate by name, or
``build_optimiser(params, config)`` to instantiate from a config object.

Usage:
    from optimisers import get_optimiser, list_optimisers

    opt = get_optimiser("adam", model.parameters(), lr=1e-3)
    print(list_optimisers())  # ['adadelta', 'adagrad', 'adam', ...]
"""

from optimisers.adadelta import Adadelta
from optimisers.adagrad import Adagrad
from optimisers.adam import Adam, AdamW
from optimisers.adamax import Adamax
from optimisers.base import ConfiguredOptimiser, ParamOptimiser
from optimisers.config import (
    AdadeltaConfig,
    AdagradConfig,
    AdamaxConfig,
    AdamConfig,
    ConvergenceNorm,
    LBFGSConfig,
    NAdamConfig,
    RAdamConfig,
    RMSpropConfig,
    SGDConfig,
    WeightDecayMode,
    config_from_dict,
    load_config,
)
from optimisers.errors import (
    InvalidHyperparameter,
    NonFiniteGradient,
    OptimiserError,
    ParameterError,
    ShapeMismatch,
    UnsupportedOperation,
)
from optimisers.lbfgs import LBFGS
from optimisers.nadam import NAdam
from optimisers.radam import RAdam
from optimisers.rmsprop import RMSprop
from optimisers.sgd_momentum import SGD

OPTIMISER_REGISTRY: dict[str, type[ConfiguredOptimiser]] = {
    "sgd": SGD,
    "adagrad": Adagrad,
    "adadelta": Adadelta,
    "adamax": Adamax,
    "adam": Adam,
    "adamw": AdamW,
    "nadam": NAdam,
    "radam": RAdam,
    "rmsprop": RMSprop,
    "lbfgs": LBFGS,
}

# Closed mapping from config type to the optimiser that runs it.
CONFIG_REGISTRY: dict[type, type[ConfiguredOptimiser]] = {
    SGDConfig: SGD,
    AdagradConfig: Adagrad,
    AdadeltaConfig: Adadelta,
    AdamaxConfig: Adamax,
    AdamConfig: Adam,
    NAdamConfig: NAdam,
    RAdamConfig: RAdam,
    RMSpropConfig: RMSprop,
    LBFGSConfig: LBFGS,
}


def get_optimiser(name: str, params, **kwargs) -> ConfiguredOptimiser:
    """Instantiate an optimiser by its registry name.

    Args:
        name: One of the keys in OPTIMISER_REGISTRY.
        params: Model parameters (iterable or param groups).
        **kwargs: Forwarded to the optimiser constructor.

    Returns:
        An optimiser instance.
    """
    if name not in OPTIMISER_REGISTRY:
        available = ", ".join(sorted(OPTIMISER_REGISTRY.keys()))
        raise ValueError(f"Unknown optimiser '{name}'. Available: {available}")
    return OPTIMISER_REGISTRY[name](params, **kwargs)


def build_optimiser(params, config, *, check_finite: bool = False) -> ConfiguredOptimiser:
    """Instantiate the optimiser matching a config object."""
    try:
        optimiser_cls = CONFIG_REGISTRY[type(config)]
    except KeyError:
        raise TypeError(f"No optimiser registered for {type(config).__name__}") from None
    return optimiser_cls(params, **config.to_defaults(), check_finite=check_finite)


def list_optimisers() -> list[str]:
    """Return sorted list of available optimiser names."""
    return sorted(OPTIMISER_REGISTRY.keys())


__all__ = [
    "Adadelta",
    "Adagrad",
    "Adam",
    "AdamW",
    "Adamax",
    "LBFGS",
    "NAdam",
    "RAdam",
    "RMSprop",
    "SGD",
    "ConfiguredOptimiser",
    "ParamOptimiser",
    "AdadeltaConfig",
    "AdagradConfig",
    "AdamaxConfig",
    "AdamConfig",
    "LBFGSConfig",
    "NAdamConfig",
    "RAdamConfig",
    "RMSpropConfig",
    "SGDConfig",
    "ConvergenceNorm",
    "WeightDecayMode",
    "config_from_dict",
    "load_config",
    "InvalidHyperparameter",
    "NonFiniteGradient",
    "OptimiserError",
    "ParameterError",
    "ShapeMismatch",
    "UnsupportedOperation",
    "OPTIMISER_REGISTRY",
    "CONFIG_REGISTRY",
    "build_optimiser",
    "get_optimiser",
    "list_optimisers",
]
