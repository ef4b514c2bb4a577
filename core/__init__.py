"""
Core Classes for the Minibatch Network Trainer

Main components:
- TrainerConfig: Configuration dataclass with all trainer options
- GeneralMatrix: Supervision storage (dense, sparse, compressed)
- NnetIo / NnetExample: Named entries of one minibatch
- TorchNetwork: Reference named-node network on torch modules
- CachingCompiler / TorchComputer: Reference compile + execute backend
"""

from .config import (
    TrainerConfig,
    parse_objective_scales,
    check_update_options,
    get_default_config,
    FAST_TEST_CONFIG
)
from .matrix import MatrixKind, CompressedMatrix, GeneralMatrix
from .example import NnetIo, NnetExample
from .interfaces import NetworkGraph, Compiler, Computer
from .network import ObjectiveType, NetworkNode, TorchNetwork
from .computation import (
    REGULARIZER_SUFFIX,
    IoSpecification,
    ComputationRequest,
    Computation,
    get_computation_request,
    CachingCompiler,
    TorchComputer
)

__all__ = [
    'TrainerConfig',
    'parse_objective_scales',
    'check_update_options',
    'get_default_config',
    'FAST_TEST_CONFIG',
    'MatrixKind',
    'CompressedMatrix',
    'GeneralMatrix',
    'NnetIo',
    'NnetExample',
    'NetworkGraph',
    'Compiler',
    'Computer',
    'ObjectiveType',
    'NetworkNode',
    'TorchNetwork',
    'REGULARIZER_SUFFIX',
    'IoSpecification',
    'ComputationRequest',
    'Computation',
    'get_computation_request',
    'CachingCompiler',
    'TorchComputer',
]
