"""Graph execution configuration.

Limits the scheduler applies to every run of a compiled graph. Values can be
passed explicitly or read from ``STEPGRAPH_*`` environment variables.
"""

import os
from pathlib import Path
from typing import Optional, Mapping
from pydantic import BaseModel, Field

ENV_PREFIX = "STEPGRAPH_"


class GraphConfig(BaseModel):
    """Execution limits for a compiled graph.

    Attributes:
        max_steps: Maximum number of super-steps per invocation before aborting
        max_concurrency: Upper bound on node invocations running at once (None = unbounded)
        node_timeout: Seconds a single node invocation may run (None = no limit).
            A timed-out async step is cancelled. A sync step runs in a worker
            thread that cannot be cancelled: the run fails at the timeout but
            the thread keeps going, and interpreter exit waits for it.
        checkpoint_dir: Directory for the file checkpoint store, if one is used
    """
    max_steps: int = Field(default=25, gt=0)
    max_concurrency: Optional[int] = Field(default=None, gt=0)
    node_timeout: Optional[float] = Field(default=None, gt=0)
    checkpoint_dir: Optional[Path] = Field(default=None)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GraphConfig":
        """Build a config from ``STEPGRAPH_*`` variables.

        Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        data = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                data[name] = raw
        data.update(overrides)
        return cls.model_validate(data)
