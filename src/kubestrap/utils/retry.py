# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Callable, Optional, Tuple, Type, TypeVar

from kubestrap.config.models import RetryPolicy
from kubestrap.errors import RunCancelled
from .cancel import CancelToken

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    cancel: Optional[CancelToken] = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> Tuple[T, int]:
    """
    Call fn until it succeeds or policy.max_attempts is spent.

    retry_on: exception types worth another attempt; anything else propagates
    on_retry: callback(attempt, exception, delay) before each backoff sleep

    Returns (result, attempts). The last exception propagates unchanged once
    attempts are exhausted; RunCancelled is raised if the token fires during
    a backoff sleep.
    """
    cancel = cancel or CancelToken()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if on_retry:
                on_retry(attempt, exc, delay)
            if cancel.wait(delay):
                raise RunCancelled(f"cancelled while backing off: {exc}") from exc
