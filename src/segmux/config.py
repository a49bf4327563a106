"""Router configuration."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

MOUNT_PATH_ENV = "SEGMUX_MOUNT_PATH"


@dataclass(frozen=True, slots=True)
class RouterConfig:
    """Settings the host supplies to a Router.

    mount_path is a prefix stripped from incoming paths before matching, e.g.
    "/app" when the router is served under https://example.com/app/...
    """

    mount_path: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "mount_path", normalize_mount_path(self.mount_path))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RouterConfig:
        """Read settings from SEGMUX_* environment variables."""
        env = os.environ if environ is None else environ
        return cls(mount_path=env.get(MOUNT_PATH_ENV, ""))


def normalize_mount_path(mount_path: str) -> str:
    mount_path = mount_path.strip()
    if not mount_path:
        return ""
    if not mount_path.startswith("/"):
        msg = f"mount_path must start with '/', provided {mount_path=}"
        raise ValueError(msg)
    return mount_path.rstrip("/")
