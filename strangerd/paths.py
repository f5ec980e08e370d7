from __future__ import annotations

import os
from pathlib import Path


def default_strangerd_dir() -> Path:
    override = os.environ.get("STRANGERD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".strangerd"


def default_config_path() -> Path:
    return default_strangerd_dir() / "strangerd.toml"


def default_identity_path() -> Path:
    return default_strangerd_dir() / "identity"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        pass
