# mortiscope/core/worker/__init__.py
"""
Polling worker around the step executor.

Example usage:
    from mortiscope.core.worker import Worker

    worker = Worker(app.executor)
    await worker.run_forever()
"""

from mortiscope.core.worker.worker import Worker

__all__ = ['Worker']
