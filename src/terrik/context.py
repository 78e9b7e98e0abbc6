"""Run settings and the runtime context passed to provider calls."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

DEFAULT_STATE_PATH = Path("terrik.tfstate.json")

P = TypeVar("P")


class Settings(BaseModel):
    """Region, credentials profile and execution limits for a run."""

    region: str = "us-east-1"
    profile: str | None = None
    state_path: Path = DEFAULT_STATE_PATH
    parallelism: int = Field(default=4, ge=1)
    timeout: float | None = Field(default=None, gt=0)


class Context(Generic[P]):
    """Runtime state passed through plan and apply."""

    def __init__(
        self,
        provider: P,
        *,
        settings: Settings | None = None,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or Settings()
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request that no further actions be started."""
        self.cancel_event.set()
