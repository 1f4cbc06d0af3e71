"""Benchmark network: a fully connected classifier over flattened MNIST digits."""

import torch
import torch.nn as nn


class MLP(nn.Module):
    """Linear + ReLU stack used to compare optimisers on the same loss surface.

    The default 784 -> 100 -> 10 shape trains in seconds per epoch on CPU,
    so every registered optimiser can be run back to back.

    Args:
        input_dim: Size of a flattened image.
        hidden_dims: Width of each hidden layer, in order.
        num_classes: Number of logits.
        dropout: Dropout after each hidden activation; 0 adds no dropout layer.
    """

    def __init__(
        self,
        input_dim: int = 784,
        hidden_dims: tuple[int, ...] = (100,),
        num_classes: int = 10,
        dropout: float = 0.0,
    ):
        super().__init__()
        layers = []
        in_dim = input_dim
        for h_dim in hidden_dims:
            layers.extend([nn.Linear(in_dim, h_dim), nn.ReLU()])
            if dropout > 0:
                layers.append(nn.Dropout(dropout))
            in_dim = h_dim
        layers.append(nn.Linear(in_dim, num_classes))
        self.net = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Map images (batch, 1, 28, 28) or flat rows (batch, 784) to logits."""
        if x.ndim > 2:
            x = x.flatten(start_dim=1)
        return self.net(x)
