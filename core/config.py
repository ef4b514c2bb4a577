"""
Configuration for the Minibatch Network Trainer

Holds every option the trainer recognizes. Options mirror the command-line
surface of the training tool:

- momentum:              fraction of the previous delta kept each step
- max_param_change:      global L2 cap on one step's parameter change
- objective_scales_str:  "name:scale[:name:scale...]" per-output multipliers
- apply_deriv_weights:   multiply derivative rows by per-row weights
- add_regularizer:       also train "<output>-reg" companion nodes
- store/zero_component_stats: passed through to the network
- print_interval:        minibatches per reporting phase
"""

from dataclasses import dataclass, asdict
from types import MappingProxyType
from typing import Dict, Mapping, Optional


def parse_objective_scales(objective_scales_str: str) -> Mapping[str, float]:
    """
    Parse a colon-delimited "name:scale[:name:scale...]" string.

    Empty tokens are kept, so "a:1.0:" has an odd number of fields and
    is rejected.

    Returns:
        Read-only mapping from output name to scale.

    Raises:
        ValueError: odd number of fields, or a scale that is not a number.
    """
    scales: Dict[str, float] = {}
    if not objective_scales_str:
        return MappingProxyType(scales)

    fields = objective_scales_str.split(":")
    if len(fields) % 2 != 0:
        raise ValueError(
            f"Incorrect format for objective-scales-str {objective_scales_str!r}: "
            f"expected name:scale pairs, got {len(fields)} fields"
        )

    for i in range(0, len(fields), 2):
        output_name, scale_str = fields[i], fields[i + 1]
        try:
            scale = float(scale_str)
        except ValueError:
            raise ValueError(
                f"Could not convert objective-scale {scale_str!r} to float."
            ) from None
        scales[output_name] = scale

    return MappingProxyType(scales)


def check_update_options(momentum: float, max_param_change: float):
    """Raise ValueError unless momentum is in [0, 1) and max_param_change >= 0."""
    if momentum < 0.0 or momentum >= 1.0:
        raise ValueError(f"momentum must be in [0, 1), got {momentum}")
    if max_param_change < 0.0:
        raise ValueError(
            f"max_param_change must be >= 0, got {max_param_change}"
        )


@dataclass
class TrainerConfig:
    """
    Options for NnetTrainer.

    Defaults match the command-line defaults of the training tool.
    """

    # === Parameter update ===
    momentum: float = 0.0
    max_param_change: float = 2.0

    # === Objectives ===
    objective_scales_str: str = ""
    apply_deriv_weights: bool = True
    add_regularizer: bool = False

    # === Passed through to the network ===
    store_component_stats: bool = True
    zero_component_stats: bool = True

    # === Reporting ===
    print_interval: int = 100
    log_dir: Optional[str] = None  # JSON stats history (None = memory only)

    def __post_init__(self):
        """Validate options."""
        check_update_options(self.momentum, self.max_param_change)

        if self.print_interval <= 0:
            raise ValueError(
                f"print_interval must be positive, got {self.print_interval}"
            )

        # Fail at construction rather than on the first minibatch.
        parse_objective_scales(self.objective_scales_str)

    @property
    def objective_scales(self) -> Mapping[str, float]:
        return parse_objective_scales(self.objective_scales_str)

    @property
    def uses_delta_buffer(self) -> bool:
        """True when momentum or clipping needs a separate delta buffer."""
        return self.momentum != 0.0 or self.max_param_change != 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'TrainerConfig':
        """Build from a dict, ignoring unknown keys."""
        known = {k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def get_default_config() -> TrainerConfig:
    """Returns validated default configuration."""
    return TrainerConfig()


# Pre-defined configurations

# Plain SGD, no delta buffer, report every minibatch
FAST_TEST_CONFIG = TrainerConfig(
    momentum=0.0,
    max_param_change=0.0,
    print_interval=1,
    zero_component_stats=False,
)
