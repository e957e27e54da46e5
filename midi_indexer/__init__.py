"""Mirror of the on-chain MIDI registry into a relational store."""

from .indexer import IndexErrorCodes, IndexResult, TokenIndexer
from .service import IndexerService
from .store import Store

__version__ = "0.1.0"

__all__ = ["IndexErrorCodes", "IndexResult", "IndexerService", "Store", "TokenIndexer"]
