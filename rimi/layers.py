# rimi/layers.py

import torch
import torch.nn as nn
from .errors import InsufficientInputsError, ShapeMismatchError, TrainingFailedError
from .utils import anchor_partner_slots, enumerate_pairs, sigmoid_derivative, slot_index, to_float64_tensor


def _as_weight(w, name: str) -> torch.Tensor:
    w = to_float64_tensor(w)
    if not torch.isfinite(w).all():
        raise TrainingFailedError(f"{name} contains non-finite values")
    return w.detach().clone()


class GeneralizedWeightCalculator(nn.Module):
    """
    Generalized weights of a trained single-hidden-layer logistic network.

    Holds the trained weights as buffers:
        input_hidden:  (inputs + 1, hidden), row 0 is the hidden bias.
        hidden_output: (hidden + 1,), element 0 is the output bias.

    The generalized weight of input a for one sample is
        sum_h s_h * (1 - s_h) * input_hidden[a + 1, h] * hidden_output[h + 1]
    where s_h is the logistic activation of some pre-activation of hidden unit h.
    The full GW uses the real pre-activation; the main-effect GW of input q uses
    the pre-activation built from the bias and input q alone.
    """
    def __init__(self, input_hidden, hidden_output):
        super().__init__()
        input_hidden = _as_weight(input_hidden, "input_hidden")
        hidden_output = _as_weight(hidden_output, "hidden_output")
        if input_hidden.dim() != 2:
            raise ShapeMismatchError(
                f"input_hidden must be 2-D (inputs + 1, hidden), got shape {tuple(input_hidden.shape)}"
            )
        if hidden_output.dim() == 2 and hidden_output.shape[1] == 1:
            hidden_output = hidden_output[:, 0]
        if hidden_output.dim() != 1 or hidden_output.shape[0] != input_hidden.shape[1] + 1:
            raise ShapeMismatchError(
                f"hidden_output must have shape ({input_hidden.shape[1] + 1},) for "
                f"input_hidden of shape {tuple(input_hidden.shape)}, got {tuple(hidden_output.shape)}"
            )
        if input_hidden.shape[0] < 3:
            raise InsufficientInputsError(
                f"Need at least 2 inputs, input_hidden has {input_hidden.shape[0] - 1}"
            )
        self.num_inputs = input_hidden.shape[0] - 1
        self.num_hidden = input_hidden.shape[1]
        self.register_buffer('input_hidden', input_hidden)
        self.register_buffer('hidden_output', hidden_output)

    @property
    def effect_weights(self) -> torch.Tensor:
        """(inputs, hidden): input_hidden[a + 1, h] * hidden_output[h + 1]."""
        return self.input_hidden[1:] * self.hidden_output[1:].unsqueeze(0)

    def check_inputs(self, inputs: torch.Tensor) -> torch.Tensor:
        inputs = to_float64_tensor(inputs)
        if inputs.dim() != 2 or inputs.shape[1] != self.num_inputs + 1:
            raise ShapeMismatchError(
                f"Input matrix must have shape (samples, {self.num_inputs + 1}) with a bias column, "
                f"got {tuple(inputs.shape)}; input_hidden is {tuple(self.input_hidden.shape)}"
            )
        return inputs

    def hidden_preactivation(self, inputs: torch.Tensor) -> torch.Tensor:
        """HNO: (samples, hidden)."""
        return self.check_inputs(inputs) @ self.input_hidden

    def contributions(self, inputs: torch.Tensor) -> torch.Tensor:
        """Per-term pre-activation contributions x_z * w_zh: (samples, inputs + 1, hidden)."""
        inputs = self.check_inputs(inputs)
        return inputs.unsqueeze(2) * self.input_hidden.unsqueeze(0)

    def generalized_weights(self, inputs: torch.Tensor) -> torch.Tensor:
        """Full GW: (samples, inputs)."""
        deriv = sigmoid_derivative(self.hidden_preactivation(inputs))
        return deriv @ self.effect_weights.T

    def main_effect_preactivation(self, inputs: torch.Tensor) -> torch.Tensor:
        """
        Pre-activation of every hidden unit with all inputs except q removed:
        (samples, hidden, inputs).
        """
        contrib = self.contributions(inputs)
        bias = contrib[:, 0, :]
        return bias.unsqueeze(2) + contrib[:, 1:, :].transpose(1, 2)

    def main_effect_weights(self, inputs: torch.Tensor) -> torch.Tensor:
        """Main-effect GW: (samples, inputs)."""
        deriv = sigmoid_derivative(self.main_effect_preactivation(inputs))
        # deriv[s, h, q] * effect_weights[q, h] summed over h
        return torch.einsum('shq,qh->sq', deriv, self.effect_weights)

    def forward(self, inputs: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Returns (GW, MainGW), both (samples, inputs)."""
        return self.generalized_weights(inputs), self.main_effect_weights(inputs)


class InteractionDecomposer(nn.Module):
    """
    Two-way interaction generalized weights.

    For every directed slot (anchor a, partner p) the joint pre-activation keeps
    the bias and the contributions of a and p only; its generalized weight is
    taken with respect to the anchor. The interaction of the unordered pair
    {i, j} is

        (TwoWayGW[(i, j)] + TwoWayGW[(j, i)] - MainGW[i] - MainGW[j]) / 2

    With exactly two inputs the joint pre-activation is the full one, so the
    slots reduce to GW and the same formula can be taken from GW directly.
    """
    def __init__(self, calculator: GeneralizedWeightCalculator):
        super().__init__()
        self.calculator = calculator
        self.num_inputs = calculator.num_inputs
        self.pairs = enumerate_pairs(self.num_inputs)
        self.slots = anchor_partner_slots(self.num_inputs)
        self.register_buffer('anchor_index', torch.tensor([a for a, _ in self.slots], dtype=torch.long))
        self.register_buffer('partner_index', torch.tensor([p for _, p in self.slots], dtype=torch.long))
        self.register_buffer(
            'pair_slots',
            torch.tensor(
                [[slot_index(self.num_inputs, i, j), slot_index(self.num_inputs, j, i)] for i, j in self.pairs],
                dtype=torch.long
            )
        )
        self.register_buffer('pair_members', torch.tensor(self.pairs, dtype=torch.long))

    @property
    def num_pairs(self) -> int:
        return len(self.pairs)

    def two_way_preactivation(self, inputs: torch.Tensor) -> torch.Tensor:
        """Joint pre-activation per slot: (samples, hidden, slots)."""
        contrib = self.calculator.contributions(inputs)
        bias = contrib[:, 0, :].unsqueeze(2)
        per_input = contrib[:, 1:, :].transpose(1, 2)  # (S, H, inputs)
        return bias + per_input[:, :, self.anchor_index] + per_input[:, :, self.partner_index]

    def two_way_weights(self, inputs: torch.Tensor) -> torch.Tensor:
        """TwoWayGW: (samples, slots), taken with respect to each slot's anchor."""
        deriv = sigmoid_derivative(self.two_way_preactivation(inputs))
        anchor_weights = self.calculator.effect_weights[self.anchor_index]  # (slots, H)
        return torch.einsum('shk,kh->sk', deriv, anchor_weights)

    def combine(self, slot_weights: torch.Tensor, main_weights: torch.Tensor) -> torch.Tensor:
        """Removes both main effects from each pair's joint contribution and halves."""
        joint = slot_weights[:, self.pair_slots[:, 0]] + slot_weights[:, self.pair_slots[:, 1]]
        mains = main_weights[:, self.pair_members[:, 0]] + main_weights[:, self.pair_members[:, 1]]
        return (joint - mains) / 2

    def forward(self,
                inputs: torch.Tensor,
                main_weights: torch.Tensor,
                full_weights: torch.Tensor = None) -> torch.Tensor:
        """
        Interaction GW: (samples, pairs) in canonical pair order.

        Args:
            inputs: Input matrix with bias column, (samples, inputs + 1).
            main_weights: MainGW from the calculator, (samples, inputs).
            full_weights: Optional GW. With two inputs it is used directly
                instead of recomputing the joint slots.
        """
        inputs = self.calculator.check_inputs(inputs)
        if main_weights.shape != (inputs.shape[0], self.num_inputs):
            raise ShapeMismatchError(
                f"MainGW must have shape ({inputs.shape[0]}, {self.num_inputs}), got {tuple(main_weights.shape)}"
            )
        if self.num_inputs == 2 and full_weights is not None:
            return two_input_interaction(full_weights, main_weights)
        return self.combine(self.two_way_weights(inputs), main_weights)


def two_input_interaction(full_weights: torch.Tensor, main_weights: torch.Tensor) -> torch.Tensor:
    """(GW1 + GW2 - MainGW1 - MainGW2) / 2 as a (samples, 1) column."""
    if full_weights.shape[1] != 2 or main_weights.shape != full_weights.shape:
        raise ShapeMismatchError(
            f"Two-input interaction needs (samples, 2) GW and MainGW, got "
            f"{tuple(full_weights.shape)} and {tuple(main_weights.shape)}"
        )
    return ((full_weights.sum(dim=1) - main_weights.sum(dim=1)) / 2).unsqueeze(1)


def decompose(input_hidden, hidden_output, inputs) -> dict[str, torch.Tensor]:
    """
    Runs both modules on one input matrix.

    Returns:
        A dictionary with 'gw' (S, inputs), 'main' (S, inputs),
        'interaction' (S, pairs) and 'effects', the main columns followed by
        the interaction columns.
    """
    calculator = GeneralizedWeightCalculator(input_hidden, hidden_output)
    decomposer = InteractionDecomposer(calculator)
    inputs = calculator.check_inputs(inputs)
    with torch.no_grad():
        gw, main = calculator(inputs)
        interaction = decomposer(inputs, main, full_weights=gw)
    return {
        'gw': gw,
        'main': main,
        'interaction': interaction,
        'effects': torch.cat([main, interaction], dim=1),
    }
