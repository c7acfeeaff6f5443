"""
Enspira

Retrieval-augmentation pipeline that curates knowledge context for a
conversational agent before it composes a reply.

Philosophy:
- Every tenant owns its own collections, one per knowledge kind
- Vector similarity is a coarse filter; a relevance oracle decides
- When stored knowledge is thin, search the web and remember the answer

Usage:
    from enspira.common import load_config
    from enspira.retriever import RetrievalOrchestrator

    orchestrator = RetrievalOrchestrator.from_config(load_config())
    context = await orchestrator.retrieve_context(message, tenant, KnowledgeKind.KNOWLEDGE)
"""

__version__ = "0.1.0"
