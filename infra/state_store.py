"""
cowtrader Infrastructure: State Store

Persistent bot state with atomic writes.

A missing or unreadable file means "no prior state" (cold start), never a
crash. Write failures are logged and reported to the caller, not raised.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class StateStore:
    """
    Persistent state storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Unreadable or malformed files treated as absent
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/bot_state.json)
        """
        self.state_file = Path(state_file or os.getenv("STATE_FILE", "data/bot_state.json"))
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized StateStore at {self.state_file}")

    def exists(self) -> bool:
        return self.state_file.exists()

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load the state document.

        Returns:
            The document, or None when the file is absent or unreadable
        """
        if not self.state_file.exists():
            logger.info("No state file found; cold start")
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            return None

        if not isinstance(data, dict):
            logger.warning("Invalid state file format; treating as cold start")
            return None

        logger.debug("Loaded state from file")
        return data

    def save(self, state: Dict[str, Any]) -> bool:
        """
        Save state to file atomically.

        Returns:
            True on success, False if the write failed (logged)
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".state_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.state_file)
            temp_path = None
            logger.debug("Saved state to file")
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state: {e}")
            return False
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
