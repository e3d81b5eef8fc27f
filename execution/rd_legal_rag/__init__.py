"""
RD Legal RAG - Dominican Republic law assistant over verified official sources

This module provides:
- A versioned corpus of Dominican legal instruments (VIGENTE/DEROGADA)
- Ingestion with content-hash dedup and sliding-window chunking
- Background enrichment from official government sites with multi-model verification
- Retrieval restricted to VIGENTE versions, with a sufficiency gate
- A max-reliability pipeline that only cites what it was given

Architecture follows the Flowkart 3-layer pattern:
- Layer 1 (Directives): SOPs
- Layer 2 (Orchestration): ChatOrchestrator and the enrichment worker
- Layer 3 (Execution): This module and its submodules
"""

from .corpus_store import CorpusStore
from .embeddings import OpenAIEmbeddingService
from .ingestion import IngestionPipeline
from .retriever import VigenteRetriever
from .reliability_pipeline import MaxReliabilityPipeline
from .chat import ChatOrchestrator

__all__ = [
    "CorpusStore",
    "OpenAIEmbeddingService",
    "IngestionPipeline",
    "VigenteRetriever",
    "MaxReliabilityPipeline",
    "ChatOrchestrator",
]

__version__ = "0.1.0"
