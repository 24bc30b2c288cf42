from mortiscope.core.datastore.base import Datastore, DatastoreTransaction
from mortiscope.core.datastore.postgres import PostgresDatastore

__all__ = [
    'Datastore',
    'DatastoreTransaction',
    'PostgresDatastore',
]
