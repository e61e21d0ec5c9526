"""Submit-then-wait calls for middleware methods that return a job id."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from .codec import convert_result
from .correlator import DEFAULT_TIMEOUT, Correlator

_LOGGER = logging.getLogger(__name__)

JOB_WAIT_METHOD = "core.job_wait"


async def call_job(
    correlator: Correlator,
    method: str,
    params: Sequence[Any] | None = None,
    *,
    timeout: float | None | object = DEFAULT_TIMEOUT,
    result_type: Callable[[Any], Any] | None = None,
) -> Any:
    """Run a job method and return the job's final result.

    The submit call must answer with an integer job id. That id is then
    passed to ``core.job_wait``, which blocks until the job finishes; its
    result is what the caller gets back. If the submit fails, no wait call
    is made.

    Args:
        correlator: Correlator carrying both calls
        method: Job method name, e.g. ``"pool.create"``
        params: Positional parameters for the submit call
        timeout: Deadline for the wait call; jobs such as pool creation
            need far more than the default
        result_type: Optional converter for the job result
    """
    job_id = await correlator.call(method, params, result_type=int)

    _LOGGER.debug("Waiting for job %d (%s) to complete", job_id, method)
    result = await correlator.call(JOB_WAIT_METHOD, [job_id], timeout=timeout)
    return convert_result(result, result_type)
