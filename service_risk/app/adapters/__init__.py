"""
Adapters package for the risk service.

Contains the index client and the typed accessors built on top of it:

- index_client: one query+variables call with error mapping
- models: pydantic records for index payloads
- index_data: cached, coalesced accessors for operator and AVS activity

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .index_client import IndexQueryExecutor
from .index_data import IndexDataService

__all__ = [
    "IndexQueryExecutor",
    "IndexDataService",
]
