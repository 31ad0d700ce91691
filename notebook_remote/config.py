"""
Settings: runtime configuration for notebook-remote.
"""

import os
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field

ENV_PREFIX = "NOTEBOOK_REMOTE_"


class DiscardOutputs(str, Enum):
    """Fixed output-discard policies for serialization."""
    NEVER = "never"
    ALWAYS = "always"


# A predicate receives the notebook being serialized.
DiscardPolicy = Union[DiscardOutputs, Callable[[Any], bool]]


def should_discard(policy: Optional[DiscardPolicy], notebook) -> bool:
    """Evaluate an output-discard policy against the current notebook."""
    if policy is None or policy == DiscardOutputs.NEVER:
        return False
    if policy == DiscardOutputs.ALWAYS:
        return True
    return bool(policy(notebook))


class Settings(BaseModel):
    """Configuration shared by the runtime components."""

    model_config = {"arbitrary_types_allowed": True}

    server_url: str = "http://127.0.0.1:8888"
    discard_outputs: DiscardPolicy = DiscardOutputs.NEVER
    max_save_retries: int = Field(default=1, ge=0)
    confirm_kill: bool = True
    request_timeout: Optional[float] = Field(default=None, gt=0)
    http_timeout: float = Field(default=30.0, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None, **overrides) -> "Settings":
        """
        Build settings from ``NOTEBOOK_REMOTE_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Values that win over the environment

        Returns:
            Validated settings
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in ("server_url", "discard_outputs", "max_save_retries",
                     "confirm_kill", "request_timeout", "http_timeout"):
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "confirm_kill":
                values[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif name == "discard_outputs":
                values[name] = DiscardOutputs(raw.strip().lower())
            else:
                values[name] = raw
        values.update(overrides)
        return cls(**values)
