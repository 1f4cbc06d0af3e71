"""
Hyperparameter Configuration
============================

One frozen dataclass per algorithm. Every config validates itself in
``__post_init__``, so an invalid combination never reaches ``step()``.
The optimiser classes build their config from keyword arguments and store
the fields as torch param-group defaults; per-group overrides are
validated by building the config again with the overridden values.

Configs can also be loaded from YAML (the benchmark harness does this):

    optimiser: adamw
    lr: 3.0e-4
    betas: [0.9, 0.95]
    weight_decay: 0.1
"""

from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path

import yaml

from optimisers.errors import InvalidHyperparameter


class WeightDecayMode(str, Enum):
    """How weight decay enters the update.

    COUPLED:   L2 penalty, ``grad += weight_decay * param`` before the moments.
    DECOUPLED: AdamW style, ``param -= lr * weight_decay * param`` on its own.
    """

    COUPLED = "coupled"
    DECOUPLED = "decoupled"


class ConvergenceNorm(str, Enum):
    """Norm used by L-BFGS convergence tests: largest entry or root mean square."""

    MAX = "max"
    RMS = "rms"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_lr(lr: float) -> None:
    # written so NaN fails too
    if not lr >= 0.0:
        raise InvalidHyperparameter("learning rate", lr)


def _check_eps(eps: float) -> None:
    if not eps > 0.0:
        raise InvalidHyperparameter("epsilon", eps, "must be > 0")


def _check_weight_decay(weight_decay: float) -> None:
    if not weight_decay >= 0.0:
        raise InvalidHyperparameter("weight_decay", weight_decay, "must be >= 0")


def _check_decay(name: str, value: float) -> None:
    if not 0.0 <= value < 1.0:
        raise InvalidHyperparameter(name, value, "must be in [0, 1)")


def _check_betas(betas) -> tuple[float, float]:
    try:
        beta1, beta2 = betas
    except (TypeError, ValueError):
        raise InvalidHyperparameter("betas", betas, "expected (beta1, beta2)") from None
    _check_decay("beta1", beta1)
    _check_decay("beta2", beta2)
    return (float(beta1), float(beta2))


def _coerce_enum(enum_cls, name: str, value):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidHyperparameter(name, value, f"expected one of: {allowed}") from None


class _Config:
    """Mixin shared by every config dataclass."""

    def to_defaults(self) -> dict:
        """Field values as a torch param-group defaults dict."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))


# ---------------------------------------------------------------------------
# Per-algorithm configs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SGDConfig(_Config):
    lr: float = 0.01
    momentum: float = 0.0
    dampening: float = 0.0
    nesterov: bool = False
    weight_decay: float = 0.0

    def __post_init__(self):
        _check_lr(self.lr)
        if not self.momentum >= 0.0:
            raise InvalidHyperparameter("momentum", self.momentum, "must be >= 0")
        if not 0.0 <= self.dampening <= 1.0:
            raise InvalidHyperparameter("dampening", self.dampening, "must be in [0, 1]")
        _check_weight_decay(self.weight_decay)
        if self.nesterov and (self.momentum <= 0.0 or self.dampening != 0.0):
            raise InvalidHyperparameter(
                "nesterov", self.nesterov, "requires momentum > 0 and zero dampening"
            )


@dataclass(frozen=True)
class AdagradConfig(_Config):
    lr: float = 0.01
    lr_decay: float = 0.0
    weight_decay: float = 0.0
    eps: float = 1e-10

    def __post_init__(self):
        _check_lr(self.lr)
        if not self.lr_decay >= 0.0:
            raise InvalidHyperparameter("lr_decay", self.lr_decay, "must be >= 0")
        _check_weight_decay(self.weight_decay)
        _check_eps(self.eps)


@dataclass(frozen=True)
class AdadeltaConfig(_Config):
    lr: float = 1.0
    rho: float = 0.9
    eps: float = 1e-6
    weight_decay: float = 0.0

    def __post_init__(self):
        _check_lr(self.lr)
        _check_decay("rho", self.rho)
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)


@dataclass(frozen=True)
class AdamaxConfig(_Config):
    lr: float = 2e-3
    betas: tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    weight_decay: float = 0.0

    def __post_init__(self):
        _check_lr(self.lr)
        object.__setattr__(self, "betas", _check_betas(self.betas))
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)


@dataclass(frozen=True)
class AdamConfig(_Config):
    lr: float = 1e-3
    betas: tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    weight_decay: float = 0.0
    weight_decay_mode: WeightDecayMode = WeightDecayMode.COUPLED
    amsgrad: bool = False

    def __post_init__(self):
        _check_lr(self.lr)
        object.__setattr__(self, "betas", _check_betas(self.betas))
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)
        object.__setattr__(
            self,
            "weight_decay_mode",
            _coerce_enum(WeightDecayMode, "weight_decay_mode", self.weight_decay_mode),
        )


@dataclass(frozen=True)
class NAdamConfig(_Config):
    lr: float = 2e-3
    betas: tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    weight_decay: float = 0.0
    momentum_decay: float = 4e-3
    weight_decay_mode: WeightDecayMode = WeightDecayMode.COUPLED

    def __post_init__(self):
        _check_lr(self.lr)
        object.__setattr__(self, "betas", _check_betas(self.betas))
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)
        if not self.momentum_decay >= 0.0:
            raise InvalidHyperparameter("momentum_decay", self.momentum_decay, "must be >= 0")
        object.__setattr__(
            self,
            "weight_decay_mode",
            _coerce_enum(WeightDecayMode, "weight_decay_mode", self.weight_decay_mode),
        )


@dataclass(frozen=True)
class RAdamConfig(_Config):
    lr: float = 1e-3
    betas: tuple[float, float] = (0.9, 0.999)
    eps: float = 1e-8
    weight_decay: float = 0.0
    weight_decay_mode: WeightDecayMode = WeightDecayMode.COUPLED

    def __post_init__(self):
        _check_lr(self.lr)
        object.__setattr__(self, "betas", _check_betas(self.betas))
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)
        object.__setattr__(
            self,
            "weight_decay_mode",
            _coerce_enum(WeightDecayMode, "weight_decay_mode", self.weight_decay_mode),
        )


@dataclass(frozen=True)
class RMSpropConfig(_Config):
    lr: float = 0.01
    alpha: float = 0.99
    eps: float = 1e-8
    weight_decay: float = 0.0
    momentum: float = 0.0
    centered: bool = False

    def __post_init__(self):
        _check_lr(self.lr)
        _check_decay("alpha", self.alpha)
        _check_eps(self.eps)
        _check_weight_decay(self.weight_decay)
        if not self.momentum >= 0.0:
            raise InvalidHyperparameter("momentum", self.momentum, "must be >= 0")


@dataclass(frozen=True)
class LBFGSConfig(_Config):
    lr: float = 1.0
    max_iter: int = 20
    max_eval: int | None = None
    tolerance_grad: float = 1e-7
    tolerance_change: float = 1e-9
    history_size: int = 100
    line_search: str | None = None
    wolfe_c1: float = 1e-4
    wolfe_c2: float = 0.9
    grad_norm: ConvergenceNorm = ConvergenceNorm.MAX
    step_norm: ConvergenceNorm = ConvergenceNorm.MAX
    weight_decay: float = 0.0

    def __post_init__(self):
        _check_lr(self.lr)
        if self.max_iter < 1:
            raise InvalidHyperparameter("max_iter", self.max_iter, "must be >= 1")
        if self.max_eval is None:
            object.__setattr__(self, "max_eval", self.max_iter * 5 // 4)
        if self.max_eval < 1:
            raise InvalidHyperparameter("max_eval", self.max_eval, "must be >= 1")
        if not self.tolerance_grad >= 0.0:
            raise InvalidHyperparameter("tolerance_grad", self.tolerance_grad)
        if not self.tolerance_change >= 0.0:
            raise InvalidHyperparameter("tolerance_change", self.tolerance_change)
        if self.history_size < 1:
            raise InvalidHyperparameter("history_size", self.history_size, "must be >= 1")
        if self.line_search not in (None, "strong_wolfe"):
            raise InvalidHyperparameter(
                "line_search", self.line_search, "expected None or 'strong_wolfe'"
            )
        if not 0.0 < self.wolfe_c1 < self.wolfe_c2 < 1.0:
            raise InvalidHyperparameter(
                "wolfe constants", (self.wolfe_c1, self.wolfe_c2), "need 0 < c1 < c2 < 1"
            )
        object.__setattr__(self, "grad_norm", _coerce_enum(ConvergenceNorm, "grad_norm", self.grad_norm))
        object.__setattr__(self, "step_norm", _coerce_enum(ConvergenceNorm, "step_norm", self.step_norm))
        _check_weight_decay(self.weight_decay)


CONFIGS: dict[str, type] = {
    "sgd": SGDConfig,
    "adagrad": AdagradConfig,
    "adadelta": AdadeltaConfig,
    "adamax": AdamaxConfig,
    "adam": AdamConfig,
    "adamw": AdamConfig,
    "nadam": NAdamConfig,
    "radam": RAdamConfig,
    "rmsprop": RMSpropConfig,
    "lbfgs": LBFGSConfig,
}

# AdamW only differs from Adam in its defaults.
_NAMED_DEFAULTS: dict[str, dict] = {
    "adamw": {"weight_decay": 0.01, "weight_decay_mode": WeightDecayMode.DECOUPLED},
}


def config_from_dict(name: str, mapping: dict):
    """Build the config for optimiser ``name`` from a plain mapping.

    Unknown keys are rejected so that typos in YAML files fail loudly.
    """
    key = name.lower()
    if key not in CONFIGS:
        available = ", ".join(sorted(CONFIGS))
        raise ValueError(f"Unknown optimiser '{name}'. Available: {available}")
    config_cls = CONFIGS[key]
    known = set(config_cls.field_names())
    unknown = sorted(set(mapping) - known)
    if unknown:
        raise InvalidHyperparameter("hyperparameter name", unknown[0], f"not accepted by {name}")
    kwargs = {**_NAMED_DEFAULTS.get(key, {}), **mapping}
    return config_cls(**kwargs)


def load_config(path) -> dict:
    """Load a YAML config file into a dict (empty file -> empty dict)."""
    with open(Path(path)) as f:
        config = yaml.safe_load(f)
    return config or {}
