"""
Minibatch Network Trainer

Drives one optimization step per call to `train(example)`:

1. Build a computation request from the example and compile it (cached)
2. Feed the inputs and run the forward pass
3. For every output entry: objective + derivative, per-output scale,
   optional per-row derivative weights, seed the backward pass
4. Optional "<output>-reg" companion regularizers, seeded separately
5. Backward pass
6. Parameter update (direct, or momentum + global norm clipping)
7. Phase statistics for every processed output; a minibatch that fails
   before the update leaves no statistics behind

A trainer instance is not reentrant: one `train` call must finish before
the next begins.
"""

import threading
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import torch

from core.computation import (
    REGULARIZER_SUFFIX,
    CachingCompiler,
    TorchComputer,
    get_computation_request,
)
from core.config import TrainerConfig
from core.example import NnetExample, NnetIo
from core.interfaces import Compiler, Computer, NetworkGraph

from .metrics import MetricsLogger
from .objectives import ObjectiveError, compute_objective_function, compute_regularizer
from .phase_stats import ObjectiveFunctionInfo
from .update_policy import make_update_policy


class NnetTrainer:
    """
    Trainer for one network, one minibatch at a time.

    Args:
        config: TrainerConfig
        network: Graph + parameters (updated in place)
        compiler: Compiles requests; defaults to CachingCompiler(network)
        computer_factory: Builds the executor for a compiled computation
        metrics_logger: Receives phase/total summaries; built from
            config.log_dir when not given
    """

    def __init__(
        self,
        config: TrainerConfig,
        network: NetworkGraph,
        compiler: Optional[Compiler] = None,
        computer_factory: Callable[..., Computer] = TorchComputer,
        metrics_logger: Optional[MetricsLogger] = None
    ):
        self.config = config
        self.network = network
        self.compiler = compiler if compiler is not None else CachingCompiler(network)
        self.computer_factory = computer_factory
        self.metrics_logger = metrics_logger or MetricsLogger(log_dir=config.log_dir)

        if config.zero_component_stats:
            network.zero_component_stats()

        self.update_policy = make_update_policy(config, network.parameters())
        self.objective_scales: Mapping[str, float] = config.objective_scales

        self.objf_info: Dict[str, ObjectiveFunctionInfo] = {}
        self.num_minibatches_processed = 0
        self._train_lock = threading.Lock()

    def train(self, example: NnetExample):
        """Run forward, objectives, backward and the update for one minibatch."""
        if not self._train_lock.acquire(blocking=False):
            raise RuntimeError("NnetTrainer.train() is not reentrant")
        try:
            request = get_computation_request(
                self.network, example,
                need_model_derivative=True,
                store_component_stats=self.config.store_component_stats,
                add_regularizer=self.config.add_regularizer
            )
            computation = self.compiler.compile(request)

            computer = self.computer_factory(computation, self.network)
            computer.accept_inputs(self.network, example.io)
            computer.forward()

            pending = self._process_outputs(example, computer)
            computer.backward()

            self.update_policy.apply(self.network.parameters(), computer.parameter_gradients())
            # Stats only count minibatches that got this far.
            for name, tot_weight, tot_objf in pending:
                self._update_stats(name, tot_weight, tot_objf)
            self.num_minibatches_processed += 1
        finally:
            self._train_lock.release()

    def _process_outputs(
        self, example: NnetExample, computer: Computer
    ) -> List[Tuple[str, float, float]]:
        """Seed derivatives; returns (name, weight, scaled objf) per output."""
        pending: List[Tuple[str, float, float]] = []
        for io in example.io:
            node_index = self.network.get_node_index(io.name)
            if node_index < 0:
                raise KeyError(f"Example entry {io.name!r} has no matching network node")
            if not self.network.is_output_node(node_index):
                continue

            obj_type = self.network.get_node(node_index).objective_type
            scale = self.objective_scales.get(io.name, 1.0)

            result = compute_objective_function(
                io.features, obj_type, io.name, computer.get_output(io.name),
                want_deriv=True
            )
            computer.accept_output_deriv(io.name, self._weighted_deriv(io, result.deriv, scale))
            pending.append((io.name, result.tot_weight, result.tot_objf * scale))

            if self.config.add_regularizer:
                reg_stats = self._process_regularizer(io, obj_type, computer)
                if reg_stats is not None:
                    pending.append(reg_stats)
        return pending

    def _process_regularizer(
        self, io: NnetIo, obj_type, computer: Computer
    ) -> Optional[Tuple[str, float, float]]:
        reg_name = io.name + REGULARIZER_SUFFIX
        reg_node_index = self.network.get_node_index(reg_name)
        if reg_node_index < 0:
            return None
        if not self.network.is_output_node(reg_node_index):
            raise ObjectiveError(f"Regularizer node '{reg_name}' is not an output node")

        reg_scale = self.objective_scales.get(reg_name, 1.0)
        result = compute_regularizer(obj_type, reg_name, computer.get_output(reg_name),
                                     want_deriv=True)
        # Same per-row weighting policy as the primary output.
        computer.accept_output_deriv(reg_name, self._weighted_deriv(io, result.deriv, reg_scale))
        return reg_name, result.tot_weight, result.tot_objf * reg_scale

    def _weighted_deriv(self, io: NnetIo, deriv: torch.Tensor, scale: float) -> torch.Tensor:
        if self.config.apply_deriv_weights and io.has_deriv_weights:
            weights = io.deriv_weights.to(dtype=deriv.dtype, device=deriv.device)
            if weights.shape[0] != deriv.shape[0]:
                raise ObjectiveError(
                    f"deriv_weights for '{io.name}' has {weights.shape[0]} entries, "
                    f"output has {deriv.shape[0]} rows"
                )
            deriv = deriv * weights.unsqueeze(1)
        if scale != 1.0:
            deriv = deriv * scale
        return deriv

    def _update_stats(self, name: str, tot_weight: float, tot_objf: float):
        info = self.objf_info.get(name)
        if info is None:
            info = ObjectiveFunctionInfo(self.metrics_logger)
            self.objf_info[name] = info
        info.update_stats(name, self.config.print_interval,
                          self.num_minibatches_processed, tot_weight, tot_objf)

    def print_total_stats(self) -> bool:
        """
        Print lifetime stats for every output.

        Returns:
            True if any output saw non-zero weight.
        """
        ans = False
        for name in sorted(self.objf_info):
            ans = self.objf_info[name].print_total_stats(name) or ans
        return ans
