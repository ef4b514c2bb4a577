"""
Training Infrastructure

Objective functions, phase statistics, parameter update policies and the
per-minibatch trainer that ties them together.
"""

from .objectives import (
    ObjectiveError,
    ObjectiveResult,
    compute_objective_function,
    compute_regularizer
)
from .metrics import MetricsLogger
from .phase_stats import PhaseSkipError, PhaseSummary, ObjectiveFunctionInfo
from .update_policy import DirectUpdate, MomentumClipUpdate, make_update_policy
from .trainer import NnetTrainer

__all__ = [
    'ObjectiveError',
    'ObjectiveResult',
    'compute_objective_function',
    'compute_regularizer',
    'MetricsLogger',
    'PhaseSkipError',
    'PhaseSummary',
    'ObjectiveFunctionInfo',
    'DirectUpdate',
    'MomentumClipUpdate',
    'make_update_policy',
    'NnetTrainer',
]
