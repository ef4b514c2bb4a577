"""
Parameter Update Policy

Two strategies, chosen once when the trainer is built:

- DirectUpdate: the step's gradients are added straight to the parameters.
- MomentumClipUpdate: gradients accumulate into a delta buffer; the
  buffer's L2 norm (over ALL parameters, not per layer) is checked before
  the update is applied, then the buffer decays by the momentum factor.

    param_delta = ||delta|| * (1 - momentum)
    non-finite               -> drop the whole update, zero the buffer
    > max_param_change (> 0) -> scale the step by max / param_delta

Usage:
    policy = make_update_policy(config, network.parameters())
    action = policy.apply(network.parameters(), gradients)
"""

import math
from typing import List, Sequence

import torch

from core.config import TrainerConfig, check_update_options


class DirectUpdate:
    """Plain SGD step: p += g."""

    uses_delta_buffer = False

    @torch.no_grad()
    def apply(self, params: Sequence[torch.Tensor], grads: Sequence[torch.Tensor]) -> str:
        for p, g in zip(params, grads):
            p.add_(g)
        return "applied"


class MomentumClipUpdate:
    """
    Momentum SGD with global norm clipping.

    Args:
        params: Parameters the delta buffer mirrors (shapes/devices)
        momentum: Fraction of the delta kept for the next step, in [0, 1)
        max_param_change: Cap on ||step||; 0 disables clipping
    """

    uses_delta_buffer = True

    def __init__(
        self,
        params: Sequence[torch.Tensor],
        momentum: float = 0.0,
        max_param_change: float = 0.0
    ):
        check_update_options(momentum, max_param_change)
        self.momentum = momentum
        self.max_param_change = max_param_change
        self.delta: List[torch.Tensor] = [torch.zeros_like(p, requires_grad=False) for p in params]

        self.num_clipped = 0
        self.num_discarded = 0

    def delta_norm(self) -> float:
        """L2 norm of the whole delta buffer."""
        sq = sum(float(torch.sum(d.double() * d.double())) for d in self.delta)
        return math.sqrt(sq)

    @torch.no_grad()
    def zero_delta(self):
        for d in self.delta:
            d.zero_()

    @torch.no_grad()
    def apply(self, params: Sequence[torch.Tensor], grads: Sequence[torch.Tensor]) -> str:
        if len(grads) != len(self.delta):
            raise ValueError(
                f"Got {len(grads)} gradients for a delta buffer of {len(self.delta)} parameters"
            )
        for d, g in zip(self.delta, grads):
            d.add_(g)

        scale = 1.0 - self.momentum
        param_delta = self.delta_norm() * scale
        action = "applied"

        if not math.isfinite(param_delta):
            print(f"[STABILITY:INF] Infinite parameter change ({param_delta}), will not apply.")
            self.zero_delta()
            self.num_discarded += 1
            return "discarded"

        if self.max_param_change != 0.0 and param_delta > self.max_param_change:
            ratio = self.max_param_change / param_delta
            scale *= ratio
            print(f"[CLIP] Parameter change too big: {param_delta} > "
                  f"--max-param-change={self.max_param_change}, scaling by {ratio}")
            self.num_clipped += 1
            action = "clipped"

        for p, d in zip(params, self.delta):
            p.add_(d, alpha=scale)
        for d in self.delta:
            d.mul_(self.momentum)
        return action


def make_update_policy(config: TrainerConfig, params: Sequence[torch.Tensor]):
    """Pick the update strategy for this configuration."""
    if not config.uses_delta_buffer:
        return DirectUpdate()
    return MomentumClipUpdate(params, config.momentum, config.max_param_change)
