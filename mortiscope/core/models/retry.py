# mortiscope/core/models/retry.py
from __future__ import annotations

import random
from datetime import timedelta
from typing import Annotated, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.types import PositiveInt


class RetryPolicy(BaseModel):
    """
    Retry policy for a workflow run.

    After a step raises, the whole run is retried from its first unfinished step
    until max_retries is used up; then the workflow's failure hook runs.

    Two strategies supported:
    1. Fixed: Uses intervals list exactly as specified
    2. Exponential: Uses intervals[0] as base, doubling per attempt

    Fields:
        max_retries: retries after the first attempt (0 = fail on first error)
        intervals: delay intervals in seconds between attempts
        backoff_strategy: 'fixed' uses intervals as-is, 'exponential' uses intervals[0] as base
        jitter: whether to add +-25% randomization to delays
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    max_retries: Annotated[
        int, Field(ge=0, le=20, description='Number of retry attempts (0-20)')
    ] = 2
    intervals: Annotated[
        list[
            Annotated[
                PositiveInt,
                Field(le=86400, description='Retry interval in seconds (1-86400)'),
            ]
        ],
        Field(min_length=1, max_length=20, description='List of retry intervals'),
    ] = [10]
    backoff_strategy: Literal['fixed', 'exponential'] = 'exponential'
    jitter: bool = True

    @model_validator(mode='after')
    def validate_strategy_consistency(self) -> Self:
        """Validate that backoff strategy is consistent with intervals configuration."""
        if self.backoff_strategy == 'fixed':
            if self.max_retries > 0 and len(self.intervals) != self.max_retries:
                raise ValueError(
                    f'Fixed backoff strategy requires intervals length ({len(self.intervals)}) '
                    f'to match max_retries ({self.max_retries}).'
                )
        elif len(self.intervals) != 1:
            raise ValueError(
                f'Exponential backoff strategy requires exactly one base interval, '
                f'got {len(self.intervals)} intervals.'
            )
        return self

    @classmethod
    def fixed(cls, intervals: list[int], *, jitter: bool = True) -> RetryPolicy:
        """Fixed backoff policy where intervals length defines max_retries."""
        return cls(
            max_retries=len(intervals),
            intervals=intervals,
            backoff_strategy='fixed',
            jitter=jitter,
        )

    @classmethod
    def exponential(
        cls, base_seconds: int, *, max_retries: int, jitter: bool = True
    ) -> RetryPolicy:
        """Exponential policy: base_seconds * 2**(attempt-1) per retry."""
        return cls(
            max_retries=max_retries,
            intervals=[base_seconds],
            backoff_strategy='exponential',
            jitter=jitter,
        )

    @classmethod
    def none(cls) -> RetryPolicy:
        """Fail the run on its first error."""
        return cls(max_retries=0, intervals=[1], backoff_strategy='fixed', jitter=False)

    def delay_for(self, retry_number: int) -> timedelta:
        """Delay before retry number `retry_number` (1-based)."""
        index = max(1, retry_number)
        if self.backoff_strategy == 'fixed':
            seconds = float(self.intervals[min(index, len(self.intervals)) - 1])
        else:
            seconds = float(min(86400, self.intervals[0] * 2 ** (index - 1)))
        if self.jitter:
            seconds += random.uniform(-seconds * 0.25, seconds * 0.25)
        return timedelta(seconds=max(0.1, seconds))
