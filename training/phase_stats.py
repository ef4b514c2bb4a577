"""
Phase-windowed objective statistics.

Every output keeps lifetime totals plus totals for the current phase, a
window of `minibatches_per_phase` consecutive minibatches. When the
minibatch counter crosses into the next phase the finished phase is
printed and its accumulators reset, so long runs report moving averages
without keeping per-minibatch history.
"""

from dataclasses import dataclass
from typing import Optional

from .metrics import MetricsLogger


class PhaseSkipError(RuntimeError):
    """Raised when the phase index jumps by more than one."""
    pass


def _per_frame(total: float, weight: float) -> float:
    return total / weight if weight != 0.0 else float('nan')


@dataclass
class PhaseSummary:
    output_name: str
    phase: int
    start_minibatch: int
    end_minibatch: int
    tot_weight: float
    objf_per_frame: float
    aux_objf_per_frame: float = 0.0

    @property
    def sum_objf_per_frame(self) -> float:
        return self.objf_per_frame + self.aux_objf_per_frame


class ObjectiveFunctionInfo:
    """
    Statistics for one output.

    Args:
        metrics_logger: Optional sink for phase and total summaries
    """

    def __init__(self, metrics_logger: Optional[MetricsLogger] = None):
        self.metrics_logger = metrics_logger
        self.current_phase = 0

        self.tot_weight = 0.0
        self.tot_objf = 0.0
        self.tot_aux_objf = 0.0

        self.tot_weight_this_phase = 0.0
        self.tot_objf_this_phase = 0.0
        self.tot_aux_objf_this_phase = 0.0

    def update_stats(
        self,
        output_name: str,
        minibatches_per_phase: int,
        minibatch_counter: int,
        this_minibatch_weight: float,
        this_minibatch_tot_objf: float,
        this_minibatch_tot_aux_objf: float = 0.0
    ) -> Optional[PhaseSummary]:
        """
        Add one minibatch.

        Returns:
            Summary of the phase that was just completed, if this minibatch
            started a new phase; otherwise None.

        Raises:
            PhaseSkipError: minibatch_counter skipped a whole phase
        """
        phase = minibatch_counter // minibatches_per_phase
        summary = None
        if phase != self.current_phase:
            if phase != self.current_phase + 1:
                raise PhaseSkipError(
                    f"Phase for '{output_name}' jumped from {self.current_phase} to {phase} "
                    f"(minibatch {minibatch_counter}, {minibatches_per_phase} per phase)"
                )
            summary = self.print_stats_for_this_phase(output_name, minibatches_per_phase)
            self.current_phase = phase
            self.tot_weight_this_phase = 0.0
            self.tot_objf_this_phase = 0.0
            self.tot_aux_objf_this_phase = 0.0

        self.tot_weight_this_phase += this_minibatch_weight
        self.tot_objf_this_phase += this_minibatch_tot_objf
        self.tot_aux_objf_this_phase += this_minibatch_tot_aux_objf
        self.tot_weight += this_minibatch_weight
        self.tot_objf += this_minibatch_tot_objf
        self.tot_aux_objf += this_minibatch_tot_aux_objf
        return summary

    def print_stats_for_this_phase(
        self,
        output_name: str,
        minibatches_per_phase: int
    ) -> PhaseSummary:
        start_minibatch = self.current_phase * minibatches_per_phase
        end_minibatch = start_minibatch + minibatches_per_phase - 1
        summary = PhaseSummary(
            output_name=output_name,
            phase=self.current_phase,
            start_minibatch=start_minibatch,
            end_minibatch=end_minibatch,
            tot_weight=self.tot_weight_this_phase,
            objf_per_frame=_per_frame(self.tot_objf_this_phase, self.tot_weight_this_phase),
            aux_objf_per_frame=_per_frame(self.tot_aux_objf_this_phase, self.tot_weight_this_phase),
        )

        prefix = (f"[STATS] Average objective function for '{output_name}' for minibatches "
                  f"{start_minibatch}-{end_minibatch} is")
        if self.tot_aux_objf_this_phase == 0.0:
            summary.aux_objf_per_frame = 0.0
            print(f"{prefix} {summary.objf_per_frame} over {summary.tot_weight} frames.")
        else:
            print(f"{prefix} {summary.objf_per_frame} + {summary.aux_objf_per_frame} = "
                  f"{summary.sum_objf_per_frame} over {summary.tot_weight} frames.")

        if self.metrics_logger is not None:
            self.metrics_logger.log_phase(summary)
        return summary

    def print_total_stats(self, name: str) -> bool:
        """Print lifetime averages; True if any weight was seen."""
        objf = _per_frame(self.tot_objf, self.tot_weight)
        aux_objf = _per_frame(self.tot_aux_objf, self.tot_weight)

        if self.tot_aux_objf == 0.0:
            print(f"[STATS] Overall average objective function for '{name}' is "
                  f"{objf} over {self.tot_weight} frames.")
        else:
            print(f"[STATS] Overall average objective function for '{name}' is "
                  f"{objf} + {aux_objf} = {objf + aux_objf} over {self.tot_weight} frames.")
        print(f"[this line is to be parsed by a script:] log-prob-per-frame={objf}")

        if self.metrics_logger is not None:
            self.metrics_logger.log_total(name, self.tot_weight, objf,
                                          aux_objf if self.tot_aux_objf != 0.0 else 0.0)
        return self.tot_weight != 0.0
