"""
Collaborator interfaces consumed by the trainer.

The trainer only talks to these three capabilities; core.network and
core.computation provide the torch-backed reference implementations.
"""

from typing import Any, List, Protocol, Sequence

import torch

from .example import NnetIo


class NetworkGraph(Protocol):
    """Graph queries plus access to the trainable parameters."""

    def get_node_index(self, name: str) -> int: ...

    def is_output_node(self, index: int) -> bool: ...

    def get_node(self, index: int) -> Any: ...

    def parameters(self) -> List[torch.Tensor]: ...

    def zero_component_stats(self) -> None: ...


class Compiler(Protocol):
    def compile(self, request: Any) -> Any: ...


class Computer(Protocol):
    """Executes one compiled computation: forward, seeded backward."""

    def accept_inputs(self, network: NetworkGraph, io: Sequence[NnetIo]) -> None: ...

    def forward(self) -> None: ...

    def get_output(self, name: str) -> torch.Tensor: ...

    def accept_output_deriv(self, name: str, deriv: torch.Tensor) -> None: ...

    def backward(self) -> None: ...

    def parameter_gradients(self) -> List[torch.Tensor]: ...
