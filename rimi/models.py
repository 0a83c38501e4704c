# rimi/models.py

import logging
import numpy as np
import torch
import torch.nn as nn
from .errors import TrainingFailedError
from .utils import to_float64_tensor

logger = logging.getLogger(__name__)

HIDDEN_UNITS_FACTOR = 1.6
LEARNING_RATE = 0.01
THRESHOLD = 0.01
STEPMAX = 100_000


def hidden_units_for(num_inputs: int, factor: float = HIDDEN_UNITS_FACTOR) -> int:
    """round(inputs * factor), never less than one unit."""
    return max(1, int(round(num_inputs * factor)))


class SigmoidMLP(nn.Module):
    """
    Single-hidden-layer network with logistic hidden units and a logistic output.
    Exposes its weights in the bias-first layout the generalized-weight
    analysis expects.
    """
    def __init__(self,
                 input_dim: int,
                 hidden_dim: int,
                 generator: torch.Generator = None):
        super().__init__()
        self.input_dim = input_dim
        self.hidden_dim = hidden_dim
        self.hidden = nn.Linear(input_dim, hidden_dim).double()
        self.output = nn.Linear(hidden_dim, 1).double()
        self.reset_parameters(generator)

    def reset_parameters(self, generator: torch.Generator = None):
        """Draws every weight and bias from a standard normal."""
        with torch.no_grad():
            for param in self.parameters():
                param.copy_(torch.randn(param.shape, generator=generator, dtype=param.dtype))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = torch.sigmoid(self.hidden(x))
        return torch.sigmoid(self.output(h))

    @property
    def input_hidden(self) -> torch.Tensor:
        """(inputs + 1, hidden), row 0 holds the hidden biases."""
        w = self.hidden.weight.detach()
        b = self.hidden.bias.detach()
        return torch.cat([b.unsqueeze(0), w.T], dim=0)

    @property
    def hidden_output(self) -> torch.Tensor:
        """(hidden + 1,), element 0 holds the output bias."""
        w = self.output.weight.detach()[0]
        b = self.output.bias.detach()
        return torch.cat([b, w], dim=0)

    def predict(self, rows) -> np.ndarray:
        """Predictions for a (samples, inputs) array as a flat numpy array."""
        x = to_float64_tensor(rows)
        self.eval()
        with torch.no_grad():
            return self(x).squeeze(1).cpu().numpy()


def train_network(train_inputs,
                  train_targets,
                  hidden_units: int,
                  generator: torch.Generator = None,
                  *,
                  learning_rate: float = LEARNING_RATE,
                  threshold: float = THRESHOLD,
                  stepmax: int = STEPMAX) -> SigmoidMLP:
    """
    Full-batch backpropagation on the error 0.5 * sum((out - y)^2).

    Training stops once the largest absolute partial derivative of the error
    drops below `threshold`.

    Args:
        train_inputs: (samples, inputs) array of normalized inputs.
        train_targets: (samples,) array of normalized outputs.
        hidden_units: Number of hidden units.
        generator: Torch generator for the initial weights.
        learning_rate: Gradient-descent step size.
        threshold: Convergence threshold on the partial derivatives.
        stepmax: Maximum number of steps.

    Raises:
        TrainingFailedError: If the threshold is not reached within `stepmax`
            steps or the weights become non-finite.
    """
    x = to_float64_tensor(train_inputs)
    y = to_float64_tensor(train_targets).reshape(-1, 1)
    if x.dim() != 2 or x.shape[0] != y.shape[0]:
        raise ValueError(f"Inputs {tuple(x.shape)} and targets {tuple(y.shape)} do not align")

    model = SigmoidMLP(x.shape[1], hidden_units, generator=generator)
    optimizer = torch.optim.SGD(model.parameters(), lr=learning_rate)
    model.train()

    max_grad = float('inf')
    for step in range(1, stepmax + 1):
        optimizer.zero_grad()
        loss = 0.5 * ((model(x) - y) ** 2).sum()
        loss.backward()
        max_grad = max(p.grad.abs().max().item() for p in model.parameters())
        if not np.isfinite(max_grad):
            raise TrainingFailedError(f"Non-finite gradient at step {step}")
        if max_grad < threshold:
            logger.debug(f"Converged after {step} steps (error={loss.item():.5f}, max gradient={max_grad:.5f})")
            return model
        optimizer.step()

    raise TrainingFailedError(
        f"Did not converge within {stepmax} steps: max gradient {max_grad:.5f} >= threshold {threshold}"
    )
