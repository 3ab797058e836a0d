from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from .db import get_session_factory
from .services.factory import PipelineServices, build_services


@lru_cache(maxsize=1)
def get_services() -> PipelineServices:
    """One object graph per process so per-account token locks are shared."""
    return build_services(get_session_factory())


ServicesDep = Annotated[PipelineServices, Depends(get_services)]
