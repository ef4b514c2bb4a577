"""
Objective Functions

Computes total weight, total objective and (optionally) the derivative of
the objective w.r.t. the network output, for one output/supervision pair.
Objectives are maximized: derivatives point uphill.

Objectives (x = supervision, y = network output):
1. Cross-entropy: sum x*log(y) + (1-x)*log(1-y), weight rows*cols
2. Linear:        sum x*y,                       weight sum(x)
3. Quadratic:     -0.5 * sum (x-y)^2,            weight rows

Regularizers act on a companion output alone (no supervision):
1. Linear:    sum y,            weight rows, deriv ones
2. Quadratic: -0.5 * sum y^2,   weight rows, deriv y
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

from core.matrix import GeneralMatrix, MatrixKind
from core.network import ObjectiveType


class ObjectiveError(RuntimeError):
    """Raised for dimension mismatches and unhandled objective types."""
    pass


@dataclass
class ObjectiveResult:
    tot_weight: float
    tot_objf: float
    deriv: Optional[torch.Tensor] = None


def _cross_entropy(
    supervision: GeneralMatrix,
    output: torch.Tensor,
    want_deriv: bool
) -> ObjectiveResult:
    x = supervision.to_dense(dtype=output.dtype, device=output.device)
    n_x = 1.0 - x
    log_y = torch.log(output)
    log_n_y = torch.log1p(-output)

    tot_weight = float(x.shape[0] * x.shape[1])
    tot_objf = float((x * log_y).sum() + (n_x * log_n_y).sum())

    deriv = None
    if want_deriv:
        # x / y - (1-x) / (1-y)
        deriv = x / output - n_x / (1.0 - output)
    return ObjectiveResult(tot_weight, tot_objf, deriv)


def _linear_sparse(
    supervision: GeneralMatrix,
    output: torch.Tensor,
    want_deriv: bool
) -> ObjectiveResult:
    csr = supervision.data.tocoo()
    rows = torch.from_numpy(csr.row.astype(np.int64)).to(output.device)
    cols = torch.from_numpy(csr.col.astype(np.int64)).to(output.device)
    values = torch.from_numpy(csr.data).to(dtype=output.dtype, device=output.device)

    tot_weight = float(values.sum())
    tot_objf = float((output[rows, cols] * values).sum())

    deriv = None
    if want_deriv:
        deriv = torch.zeros_like(output)
        deriv.index_put_((rows, cols), values, accumulate=True)
    return ObjectiveResult(tot_weight, tot_objf, deriv)


def _linear_dense(
    supervision: GeneralMatrix,
    output: torch.Tensor,
    want_deriv: bool
) -> ObjectiveResult:
    # FULL and COMPRESSED both end up as a dense posterior matrix.
    post = supervision.to_dense(dtype=output.dtype, device=output.device)
    tot_weight = float(post.sum())
    tot_objf = float((output * post).sum())
    return ObjectiveResult(tot_weight, tot_objf, post if want_deriv else None)


_LINEAR_BY_KIND = {
    MatrixKind.FULL: _linear_dense,
    MatrixKind.SPARSE: _linear_sparse,
    MatrixKind.COMPRESSED: _linear_dense,
}


def _quadratic(
    supervision: GeneralMatrix,
    output: torch.Tensor,
    want_deriv: bool
) -> ObjectiveResult:
    diff = supervision.to_dense(dtype=output.dtype, device=output.device) - output
    tot_weight = float(diff.shape[0])
    tot_objf = float(-0.5 * (diff * diff).sum())
    return ObjectiveResult(tot_weight, tot_objf, diff if want_deriv else None)


def compute_objective_function(
    supervision: GeneralMatrix,
    objective_type: ObjectiveType,
    output_name: str,
    output: torch.Tensor,
    want_deriv: bool = True
) -> ObjectiveResult:
    """
    Compute the objective of `output` against `supervision`.

    Args:
        supervision: Targets, any storage encoding
        objective_type: Objective family declared by the output node
        output_name: Used in error messages
        output: (rows, cols) network output
        want_deriv: Also return d objf / d output

    Returns:
        ObjectiveResult(tot_weight, tot_objf, deriv or None)

    Raises:
        ObjectiveError: column mismatch or unhandled objective type
    """
    if output.shape[1] != supervision.num_cols:
        raise ObjectiveError(
            f"Nnet versus example output dimension (num-classes) mismatch for "
            f"'{output_name}': {output.shape[1]} (nnet) vs. {supervision.num_cols} (egs)"
        )

    output = output.detach()
    if objective_type == ObjectiveType.CROSS_ENTROPY:
        return _cross_entropy(supervision, output, want_deriv)
    if objective_type == ObjectiveType.LINEAR:
        return _LINEAR_BY_KIND[supervision.kind](supervision, output, want_deriv)
    if objective_type == ObjectiveType.QUADRATIC:
        return _quadratic(supervision, output, want_deriv)

    raise ObjectiveError(f"Objective function type {objective_type} not handled.")


def compute_regularizer(
    objective_type: ObjectiveType,
    output_name: str,
    output: torch.Tensor,
    want_deriv: bool = True
) -> ObjectiveResult:
    """
    Supervision-free objective on a companion output.

    Raises:
        ObjectiveError: objective type other than linear or quadratic
    """
    output = output.detach()
    tot_weight = float(output.shape[0])

    if objective_type == ObjectiveType.LINEAR:
        deriv = torch.ones_like(output) if want_deriv else None
        return ObjectiveResult(tot_weight, float(output.sum()), deriv)

    if objective_type == ObjectiveType.QUADRATIC:
        deriv = output.clone() if want_deriv else None
        return ObjectiveResult(tot_weight, float(-0.5 * (output * output).sum()), deriv)

    raise ObjectiveError(
        f"Regularizer objective function type {objective_type} not handled "
        f"for '{output_name}'."
    )
