# src/basketbatch/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

_loaded_from: Optional[Path] = None


def _candidates(dotenv_path: Optional[str]) -> List[Path]:
    if dotenv_path:
        return [Path(dotenv_path)]
    explicit = os.environ.get("BASKETBATCH_DOTENV_PATH")
    if explicit:
        return [Path(explicit)]

    out = [Path(".env")]
    cfg = os.environ.get("BASKETBATCH_CONFIG_PATH")
    if cfg:
        # engine.yaml and .env side by side
        out.append(Path(cfg).expanduser().parent / ".env")
    return out


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> Optional[Path]:
    """Load the first existing .env file into os.environ, once per process.

    Lookup: the `dotenv_path` argument, else BASKETBATCH_DOTENV_PATH, else
    ./.env and then the directory of BASKETBATCH_CONFIG_PATH. Variables that
    are already set are never overridden.

    Returns the file that was loaded, or None.
    """
    global _loaded_from
    if _loaded_from is not None:
        return _loaded_from

    for p in _candidates(dotenv_path):
        path = p.expanduser()
        if path.is_file():
            load_dotenv(dotenv_path=str(path), override=False)
            _loaded_from = path
            return path
    return None
