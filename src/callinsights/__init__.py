"""
Call enrichment service.

Transcription, AI insights and embeddings for recorded calls, computed as
asynchronous jobs and reused through a content-addressed cache, plus semantic
search and QA scoring over the results.
"""

__version__ = "0.1.0"
