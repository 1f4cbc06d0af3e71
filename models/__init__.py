"""
Benchmark Models
================

Pre-built models for exercising the optimisers on a real network.
These are NOT part of the optimiser library -- they are tools for benchmarking.

Usage:
    from models import get_model

    model = get_model("mlp")           # MLP for MNIST
"""

from models.mlp import MLP

MODEL_REGISTRY: dict[str, type] = {
    "mlp": MLP,
}


def get_model(name: str, **kwargs):
    """Instantiate a model by its registry name.

    Args:
        name: One of the keys in MODEL_REGISTRY.
        **kwargs: Forwarded to the model constructor.

    Returns:
        A model instance.
    """
    if name not in MODEL_REGISTRY:
        available = ", ".join(sorted(MODEL_REGISTRY.keys()))
        raise ValueError(f"Unknown model '{name}'. Available: {available}")
    return MODEL_REGISTRY[name](**kwargs)


def list_models() -> list[str]:
    """Return sorted list of available model names."""
    return sorted(MODEL_REGISTRY.keys())
