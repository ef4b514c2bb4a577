"""
Training Metrics Logging

Keeps a JSON-serializable history of statistics summaries:
- phase records: per-output averages over one reporting phase
- total records: per-output lifetime averages

When a log directory is given, every record is also appended to
`phase_stats.jsonl` as it happens, so a crashed run keeps its history.
Non-finite averages (zero-weight phases) are written as null.
"""

import json
import math
import time
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional


def _json_safe(record: Dict) -> Dict:
    return {
        k: None if isinstance(v, float) and not math.isfinite(v) else v
        for k, v in record.items()
    }


class MetricsLogger:
    """
    Logger for objective statistics.

    Args:
        log_dir: Directory for JSON logs (None = keep history in memory only)
        stream_filename: JSON-lines file appended to on every record
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        stream_filename: str = "phase_stats.jsonl"
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self.stream_filename = stream_filename

        # History
        self.history: List[Dict] = []

    @property
    def stream_path(self) -> Optional[Path]:
        if self.log_dir is None:
            return None
        return self.log_dir / self.stream_filename

    def _record(self, record: Dict):
        record['time'] = time.time()
        self.history.append(record)
        if self.log_dir is not None:
            with open(self.stream_path, 'a') as f:
                f.write(json.dumps(_json_safe(record), allow_nan=False) + "\n")

    def log_phase(self, summary) -> Dict:
        """Record a completed phase (a PhaseSummary)."""
        record = {'type': 'phase'}
        record.update(asdict(summary))
        self._record(record)
        return record

    def log_total(
        self,
        output_name: str,
        tot_weight: float,
        objf_per_frame: float,
        aux_objf_per_frame: float = 0.0
    ) -> Dict:
        record = {
            'type': 'total',
            'output_name': output_name,
            'tot_weight': tot_weight,
            'objf_per_frame': objf_per_frame,
            'aux_objf_per_frame': aux_objf_per_frame,
        }
        self._record(record)
        return record

    def records(self, record_type: Optional[str] = None, output_name: Optional[str] = None) -> List[Dict]:
        """History filtered by record type and/or output name."""
        return [
            r for r in self.history
            if (record_type is None or r['type'] == record_type)
            and (output_name is None or r['output_name'] == output_name)
        ]

    def save_logs(self, filename: str = "training_log.json") -> Optional[Path]:
        """Dump the full history as one JSON document."""
        if self.log_dir is None:
            return None
        log_path = self.log_dir / filename
        with open(log_path, 'w') as f:
            json.dump([_json_safe(r) for r in self.history], f, indent=2, allow_nan=False)
        print(f"Saved training logs to {log_path}")
        return log_path
