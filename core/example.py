"""
Training examples: named input/supervision entries for one minibatch.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import torch

from .matrix import GeneralMatrix


@dataclass
class NnetIo:
    """
    One named entry of an example.

    Args:
        name: Network node this entry binds to ("input", "output", ...)
        features: Input features or supervision
        deriv_weights: Optional per-row weights for the output derivative
    """
    name: str
    features: GeneralMatrix
    deriv_weights: Optional[torch.Tensor] = None

    def __post_init__(self):
        if self.deriv_weights is not None:
            self.deriv_weights = torch.as_tensor(self.deriv_weights, dtype=torch.float32).reshape(-1)

    @property
    def has_deriv_weights(self) -> bool:
        return self.deriv_weights is not None and self.deriv_weights.numel() != 0


@dataclass
class NnetExample:
    """Ordered collection of NnetIo entries processed as one minibatch."""
    io: List[NnetIo] = field(default_factory=list)

    def get(self, name: str) -> Optional[NnetIo]:
        for io in self.io:
            if io.name == name:
                return io
        return None
