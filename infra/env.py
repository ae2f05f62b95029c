"""Environment loading: .env files and required secret checks."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

REQUIRED_ENV = ("PRIVATE_KEY", "BASE_RPC_URL", "OPENROUTER_API_KEY")


def load_env(
    filenames: Iterable[str] = (".env.local", ".env"),
    search_dirs: Optional[List[Path]] = None,
    override: bool = False,
) -> List[Path]:
    """
    Load env files from the project root and config/ directory.

    Returns list of env files actually loaded.
    """
    if search_dirs is None:
        project_root = Path(__file__).resolve().parents[1]
        search_dirs = [project_root, project_root / "config"]

    loaded: List[Path] = []
    for d in search_dirs:
        for name in filenames:
            p = d / name
            if p.exists() and p.is_file():
                load_dotenv(dotenv_path=p, override=override)
                loaded.append(p)

    if loaded:
        logger.debug("Loaded env files: %s", ", ".join(str(p) for p in loaded))
    return loaded


def missing_env(required: Sequence[str] = REQUIRED_ENV, env: Optional[Mapping[str, str]] = None) -> List[str]:
    env = os.environ if env is None else env
    return [name for name in required if not (env.get(name) or "").strip()]


def env_flag(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}
