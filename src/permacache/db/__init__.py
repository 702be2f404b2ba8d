"""
Store access for the perma-cache ledger.

- schema.py: SchemaClient, a postgrest client pinned to one schema
- client.py: DBClient, the perma-cache and user access layer
"""

from permacache.db.client import DBClient
from permacache.db.schema import SchemaClient

__all__ = ["DBClient", "SchemaClient"]
