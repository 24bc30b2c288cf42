"""Non-critical side effects: work whose failure must never fail the workflow."""

from __future__ import annotations

import contextlib
from typing import AsyncIterator

from mortiscope.core.logging import get_logger

logger = get_logger('side_effects')


@contextlib.asynccontextmanager
async def non_critical(action: str) -> AsyncIterator[None]:
    """Run the block, logging and suppressing any exception it raises.

    Example:
        async with non_critical(f'goodbye email to {email}'):
            await mailer.send_goodbye(email, name)
    """
    try:
        yield
    except Exception as exc:
        logger.error(
            f'Non-critical action failed: {action}: {type(exc).__name__}: {exc}',
            exc_info=exc,
        )
