"""
Reference Network

A small named-node graph on top of torch.nn modules. Nodes are either
inputs (fed from an example) or outputs (a module applied to one input).
Each output declares the objective type it is trained with.

Companion regularizer nodes are ordinary outputs named "<output>-reg".

Usage:
    net = TorchNetwork({'input': 10}, learning_rate=0.01)
    net.add_output('output', nn.Sequential(nn.Linear(10, 4), nn.LogSoftmax(dim=-1)))
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

import torch
import torch.nn as nn


class ObjectiveType(Enum):
    LINEAR = "linear"
    QUADRATIC = "quadratic"
    CROSS_ENTROPY = "cross-entropy"

    @classmethod
    def parse(cls, value: Union[str, 'ObjectiveType']) -> 'ObjectiveType':
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        aliases = {'xent': 'cross-entropy', 'cross_entropy': 'cross-entropy'}
        key = aliases.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown objective type {value!r}")


@dataclass
class NetworkNode:
    name: str
    is_output: bool
    dim: int
    objective_type: Optional[ObjectiveType] = None
    module: Optional[nn.Module] = None
    input_name: Optional[str] = None


class TorchNetwork:
    """
    Named-node network backed by torch modules.

    Args:
        input_dims: Mapping from input node name to feature dimension
        learning_rate: Scale applied to parameter gradients by the computer
    """

    def __init__(self, input_dims: Dict[str, int], learning_rate: float = 1.0):
        self.learning_rate = learning_rate
        self.nodes: List[NetworkNode] = []
        self._index: Dict[str, int] = {}
        self.component_stats: Dict[str, Dict[str, torch.Tensor]] = {}

        for name, dim in input_dims.items():
            self._add_node(NetworkNode(name=name, is_output=False, dim=dim))

    def _add_node(self, node: NetworkNode) -> int:
        if node.name in self._index:
            raise ValueError(f"Duplicate node name {node.name!r}")
        self._index[node.name] = len(self.nodes)
        self.nodes.append(node)
        return self._index[node.name]

    def add_output(
        self,
        name: str,
        module: nn.Module,
        input_name: str = 'input',
        objective_type: Union[str, ObjectiveType] = ObjectiveType.LINEAR,
        dim: Optional[int] = None
    ) -> int:
        """
        Add an output node computing module(inputs[input_name]).

        dim defaults to the module's output width, probed with one zero row.
        """
        input_index = self.get_node_index(input_name)
        if input_index < 0 or self.nodes[input_index].is_output:
            raise ValueError(f"Output {name!r} refers to unknown input {input_name!r}")

        if dim is None:
            with torch.no_grad():
                probe = torch.zeros(1, self.nodes[input_index].dim)
                dim = int(module(probe).shape[-1])

        return self._add_node(NetworkNode(
            name=name,
            is_output=True,
            dim=dim,
            objective_type=ObjectiveType.parse(objective_type),
            module=module,
            input_name=input_name
        ))

    # --- graph queries ---

    def get_node_index(self, name: str) -> int:
        """Index of the named node, or -1 if there is none."""
        return self._index.get(name, -1)

    def is_output_node(self, index: int) -> bool:
        return self.nodes[index].is_output

    def get_node(self, index: int) -> NetworkNode:
        return self.nodes[index]

    def output_dim(self, name: str) -> int:
        index = self.get_node_index(name)
        if index < 0:
            raise KeyError(f"No node named {name!r}")
        return self.nodes[index].dim

    def output_names(self) -> List[str]:
        return [node.name for node in self.nodes if node.is_output]

    # --- parameters ---

    def parameters(self) -> List[torch.Tensor]:
        """Unique trainable parameters across all output modules, in node order."""
        seen = set()
        params = []
        for node in self.nodes:
            if node.module is None:
                continue
            for p in node.module.parameters():
                if id(p) not in seen:
                    seen.add(id(p))
                    params.append(p)
        return params

    # --- component stats ---

    def accumulate_component_stats(self, name: str, output: torch.Tensor):
        """Add per-dimension activation sums for one output."""
        output = output.detach()
        stats = self.component_stats.get(name)
        if stats is None:
            stats = {
                'count': torch.zeros((), dtype=torch.float64),
                'value_sum': torch.zeros(output.shape[-1], dtype=torch.float64),
            }
            self.component_stats[name] = stats
        stats['count'] += output.shape[0]
        stats['value_sum'] += output.to(torch.float64).sum(dim=0).cpu()

    def zero_component_stats(self):
        self.component_stats = {}
