"""Local GraphRAG knowledge base.

Documents are chunked, an entity co-occurrence graph is built from the
chunks, and queries are answered with naive, local, global or hybrid
retrieval over a consistent snapshot of both. State is persisted as one
versioned, checksummed record on a key-value backend.
"""
