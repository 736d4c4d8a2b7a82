from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv


def load_env(
    filenames: Iterable[str] = (".env.local", ".env"),
    search_dirs: Optional[list[Path]] = None,
    override: bool = False,
) -> list[Path]:
    """
    Load env files from the working directory AND its config/ directory.

    Already-set process variables win unless override is True.
    Returns list of env files actually loaded.
    """
    if search_dirs is None:
        cwd = Path.cwd()
        search_dirs = [cwd, cwd / "config"]

    loaded: list[Path] = []
    for d in search_dirs:
        for name in filenames:
            p = Path(d) / name
            if p.is_file():
                load_dotenv(dotenv_path=p, override=override)
                loaded.append(p)

    return loaded


def env_flag(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def env_path(name: str, default: Path) -> Path:
    v = os.getenv(name)
    return Path(v) if v else Path(default)
