"""Indexing primitives for RepoBrief: file selection, AI access, errors and the vector store."""
