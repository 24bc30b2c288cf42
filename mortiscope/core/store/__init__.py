from mortiscope.core.store.base import StepStore
from mortiscope.core.store.postgres import PostgresStepStore

__all__ = [
    'StepStore',
    'PostgresStepStore',
]
