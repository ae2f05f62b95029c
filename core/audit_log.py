"""
cowtrader Core: Audit Logger

Structured record of every trading cycle for debugging and analysis.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every cycle including:
    - Price and decision source
    - Raw and filtered decisions
    - New fills, cancellations and placements
    - NO_TRADE reasons and errors

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file or "logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self, ts: datetime, mode: str, result: Dict[str, Any],
                  ledger: Optional[Dict[str, Any]] = None) -> None:
        """
        Append one cycle record.

        Args:
            ts: Cycle timestamp
            mode: DRY_RUN or LIVE
            result: Serialized cycle result
            ledger: Ledger snapshot after the cycle
        """
        entry = {
            "timestamp": ts.isoformat(),
            "mode": mode,
            "status": self._determine_status(result),
            **{k: v for k, v in result.items() if k != "status"},
            "ledger": ledger,
        }
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")
            return
        logger.debug(f"Audited cycle: status={entry['status']}")

    @staticmethod
    def _determine_status(result: Dict[str, Any]) -> str:
        if result.get("status") != "ok":
            return str(result.get("status", "unknown")).upper()
        if result.get("placed_order_id"):
            return "EXECUTED"
        return "NO_TRADE"

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """Most recent N cycle records, newest first."""
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        cycles = []
        for line in lines[-n:]:
            try:
                cycles.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return list(reversed(cycles))
