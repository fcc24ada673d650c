"""Environment-variable configuration.

Every setting can be overridden per call through keyword arguments; the
environment only supplies defaults.
"""

import os
from dataclasses import dataclass
from typing import Literal

ENV_PREFIX = "MRGRAPH_"

DeviceName = Literal["auto", "cpu", "gpu"]


def check_env_flag(name: str, default: str = "0") -> bool:
    """Check if environment variable is set to enable a feature."""
    return os.getenv(name, default).upper() in ["1", "ON", "YES", "TRUE"]


def env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back to ``default``."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    device: DeviceName = "auto"
    host_devices: int = 1
    n_jobs: int = 1
    verbose: bool = False


def load_settings() -> Settings:
    """Build a :class:`Settings` from the ``MRGRAPH_*`` environment."""
    device = os.getenv(ENV_PREFIX + "DEVICE", "auto").lower()
    if device not in ("auto", "cpu", "gpu"):
        raise ValueError(
            f"{ENV_PREFIX}DEVICE must be one of 'auto', 'cpu', 'gpu', got {device!r}"
        )

    host_devices = env_int(ENV_PREFIX + "HOST_DEVICES", 1)
    if host_devices < 1:
        raise ValueError(f"{ENV_PREFIX}HOST_DEVICES must be >= 1, got {host_devices}")

    return Settings(
        device=device,  # type: ignore[arg-type]
        host_devices=host_devices,
        n_jobs=env_int(ENV_PREFIX + "N_JOBS", 1),
        verbose=check_env_flag(ENV_PREFIX + "VERBOSE"),
    )
