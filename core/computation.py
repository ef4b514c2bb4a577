"""
Computation requests, compilation cache and the torch executor.

Flow for one minibatch:
    request = get_computation_request(network, example, ...)
    computation = compiler.compile(request)       # memoized per request
    computer = TorchComputer(computation, network)
    computer.accept_inputs(network, example.io)
    computer.forward()
    ... computer.accept_output_deriv(name, deriv) per output ...
    computer.backward()
    grads = computer.parameter_gradients()
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from .example import NnetExample, NnetIo
from .network import TorchNetwork

REGULARIZER_SUFFIX = "-reg"


@dataclass(frozen=True)
class IoSpecification:
    name: str
    num_rows: int
    has_deriv: bool = False


@dataclass(frozen=True)
class ComputationRequest:
    inputs: Tuple[IoSpecification, ...]
    outputs: Tuple[IoSpecification, ...]
    need_model_derivative: bool
    store_component_stats: bool

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(io_spec.name for io_spec in self.inputs)

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(io_spec.name for io_spec in self.outputs)


def get_computation_request(
    network: TorchNetwork,
    example: NnetExample,
    need_model_derivative: bool,
    store_component_stats: bool,
    add_regularizer: bool = False
) -> ComputationRequest:
    """
    Describe what has to be computed for an example.

    Entries naming output nodes become requested outputs; companion
    "<name>-reg" nodes are requested too when add_regularizer is set and
    the network has them as output nodes. A companion that is not an
    output is left out of the request; the trainer rejects it.

    Raises:
        KeyError: an entry names a node the network does not have
    """
    inputs: List[IoSpecification] = []
    outputs: List[IoSpecification] = []
    for io in example.io:
        node_index = network.get_node_index(io.name)
        if node_index < 0:
            raise KeyError(f"Example entry {io.name!r} has no matching network node")
        num_rows = io.features.num_rows
        if not network.is_output_node(node_index):
            inputs.append(IoSpecification(io.name, num_rows))
            continue

        outputs.append(IoSpecification(io.name, num_rows, need_model_derivative))
        if add_regularizer:
            reg_name = io.name + REGULARIZER_SUFFIX
            reg_index = network.get_node_index(reg_name)
            if reg_index >= 0 and network.is_output_node(reg_index):
                outputs.append(IoSpecification(reg_name, num_rows, need_model_derivative))

    return ComputationRequest(
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        need_model_derivative=need_model_derivative,
        store_component_stats=store_component_stats
    )


@dataclass(frozen=True)
class Computation:
    """Executable plan: which output nodes to evaluate, from which inputs."""
    request: ComputationRequest
    output_names: Tuple[str, ...]
    required_inputs: Tuple[str, ...]


class CachingCompiler:
    """
    Compiles requests into Computations, keeping the most recent ones.

    Args:
        network: Network the computations run on
        cache_capacity: Number of distinct requests kept (LRU)
    """

    def __init__(self, network: TorchNetwork, cache_capacity: int = 64):
        self.network = network
        self.cache_capacity = cache_capacity
        self._cache: "OrderedDict[ComputationRequest, Computation]" = OrderedDict()
        self.num_compilations = 0

    def compile(self, request: ComputationRequest) -> Computation:
        cached = self._cache.get(request)
        if cached is not None:
            self._cache.move_to_end(request)
            return cached

        computation = self._compile_uncached(request)
        self.num_compilations += 1
        self._cache[request] = computation
        if len(self._cache) > self.cache_capacity:
            self._cache.popitem(last=False)
        return computation

    def _compile_uncached(self, request: ComputationRequest) -> Computation:
        required = []
        for name in request.output_names:
            node = self.network.get_node(self.network.get_node_index(name))
            if node.input_name not in request.input_names:
                raise ValueError(
                    f"Output {name!r} needs input {node.input_name!r}, "
                    f"which the request does not provide"
                )
            if node.input_name not in required:
                required.append(node.input_name)
        return Computation(
            request=request,
            output_names=request.output_names,
            required_inputs=tuple(required)
        )


class TorchComputer:
    """
    Runs one Computation with torch autograd.

    Parameter gradients come out already multiplied by the network's
    learning rate; they are the change to add to the parameters.
    """

    def __init__(self, computation: Computation, network: TorchNetwork):
        self.computation = computation
        self.network = network
        self._params = network.parameters()
        self._inputs: Dict[str, torch.Tensor] = {}
        self._outputs: Dict[str, torch.Tensor] = {}
        self._derivs: Dict[str, torch.Tensor] = {}
        self._grads: Optional[List[torch.Tensor]] = None

    def accept_inputs(self, network: TorchNetwork, io: Sequence[NnetIo]):
        wanted = self.computation.request.input_names
        for entry in io:
            if entry.name in wanted:
                self._inputs[entry.name] = entry.features.to_dense()

    def forward(self):
        missing = [n for n in self.computation.required_inputs if n not in self._inputs]
        if missing:
            raise RuntimeError(f"forward() called without inputs {missing}")

        store_stats = self.computation.request.store_component_stats
        with torch.enable_grad():
            for name in self.computation.output_names:
                node = self.network.get_node(self.network.get_node_index(name))
                output = node.module(self._inputs[node.input_name])
                self._outputs[name] = output
                if store_stats:
                    self.network.accumulate_component_stats(name, output)

    def get_output(self, name: str) -> torch.Tensor:
        if name not in self._outputs:
            raise KeyError(f"Output {name!r} was not computed")
        return self._outputs[name].detach()

    def accept_output_deriv(self, name: str, deriv: torch.Tensor):
        output = self._outputs.get(name)
        if output is None:
            raise KeyError(f"Output {name!r} was not computed")
        if tuple(deriv.shape) != tuple(output.shape):
            raise ValueError(
                f"Derivative for {name!r} has shape {tuple(deriv.shape)}, "
                f"output has {tuple(output.shape)}"
            )
        self._derivs[name] = deriv

    def backward(self):
        if not self.computation.request.need_model_derivative:
            raise RuntimeError("backward() on a computation without model derivative")

        seeded = [
            name for name in self.computation.output_names
            if name in self._derivs and self._outputs[name].requires_grad
        ]
        if seeded and self._params:
            outputs = [self._outputs[name] for name in seeded]
            grad_outputs = [
                self._derivs[name].to(dtype=self._outputs[name].dtype,
                                      device=self._outputs[name].device)
                for name in seeded
            ]
            grads = torch.autograd.grad(
                outputs, self._params, grad_outputs=grad_outputs, allow_unused=True
            )
        else:
            grads = [None] * len(self._params)

        lr = self.network.learning_rate
        self._grads = [
            torch.zeros_like(p) if g is None else g.detach() * lr
            for p, g in zip(self._params, grads)
        ]

    def parameter_gradients(self) -> List[torch.Tensor]:
        if self._grads is None:
            raise RuntimeError("parameter_gradients() called before backward()")
        return self._grads
