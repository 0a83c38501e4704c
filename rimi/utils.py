# rimi/utils.py

import itertools
import numpy as np
import torch
from .errors import InsufficientInputsError, NotFoundError

# exp() overflows float64 just above 709
SIGMOID_CLAMP = 500.0


def stable_sigmoid(x: torch.Tensor, clamp: float = SIGMOID_CLAMP) -> torch.Tensor:
    """Logistic function with the argument clamped so exp() never overflows."""
    return torch.sigmoid(x.clamp(min=-clamp, max=clamp))


def sigmoid_derivative(x: torch.Tensor) -> torch.Tensor:
    """s * (1 - s) for s = sigmoid(x)."""
    s = stable_sigmoid(x)
    return s * (1 - s)


def enumerate_pairs(n: int) -> tuple[tuple[int, int], ...]:
    """
    All unordered input pairs (i, j) with i < j, outer loop over i, inner over j.
    This order is the column order of every interaction table.
    """
    if n < 2:
        raise InsufficientInputsError(f"Need at least 2 inputs to form pairs, got {n}")
    return tuple(itertools.combinations(range(n), 2))


def pair_to_index(pairs: tuple[tuple[int, int], ...], i: int, j: int) -> int:
    """Position of the pair {i, j} in `pairs`, regardless of argument order."""
    if i == j:
        raise NotFoundError(f"Pair ({i}, {j}) is not a pair of distinct inputs")
    key = (min(i, j), max(i, j))
    try:
        return pairs.index(key)
    except ValueError:
        raise NotFoundError(f"Pair {key} not found among {len(pairs)} pairs") from None


def anchor_partner_slots(n: int) -> tuple[tuple[int, int], ...]:
    """
    Directed (anchor, partner) slots: every input as anchor, every other input as
    partner, both ascending. There are n * (n - 1) slots.
    """
    if n < 2:
        raise InsufficientInputsError(f"Need at least 2 inputs to form slots, got {n}")
    return tuple(itertools.permutations(range(n), 2))


def slot_index(n: int, anchor: int, partner: int) -> int:
    """Closed-form position of (anchor, partner) in `anchor_partner_slots(n)`."""
    if anchor == partner or not (0 <= anchor < n and 0 <= partner < n):
        raise NotFoundError(f"No slot ({anchor}, {partner}) for {n} inputs")
    return anchor * (n - 1) + (partner if partner < anchor else partner - 1)


def to_float64_tensor(values) -> torch.Tensor:
    """Float64 tensor that never shares memory with a read-only numpy array."""
    if isinstance(values, torch.Tensor):
        return values.to(torch.float64)
    return torch.from_numpy(np.array(values, dtype=np.float64))


def get_feature_names(num_features: int, default_prefix: str = "x") -> list[str]:
    """Generates default feature names if none are provided."""
    return [f"{default_prefix}{i + 1}" for i in range(num_features)]


def get_term_names(feature_names: list[str]) -> list[str]:
    """Main-effect names followed by pair names "A*B" in canonical pair order."""
    pairs = enumerate_pairs(len(feature_names))
    return list(feature_names) + [f"{feature_names[i]}*{feature_names[j]}" for i, j in pairs]


def build_input_matrix(inputs) -> torch.Tensor:
    """
    Prepends the bias column of ones to a (samples, inputs) array.
    Returns a float64 tensor of shape (samples, inputs + 1).
    """
    x = to_float64_tensor(inputs)
    if x.dim() != 2:
        raise ValueError(f"Expected a 2-D input array, got shape {tuple(x.shape)}")
    ones = torch.ones(x.shape[0], 1, dtype=torch.float64)
    return torch.cat([ones, x], dim=1)
