"""Batch orchestration for external model-fitting runs."""

__version__ = "0.3.0"

from nmbatch.descriptor import build_job_descriptor  # noqa: E402
from nmbatch.manager import JobManager  # noqa: E402
from nmbatch.resolver import resolve_job_arguments  # noqa: E402

__all__ = ["JobManager", "build_job_descriptor", "resolve_job_arguments", "__version__"]
