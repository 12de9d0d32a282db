"""
Client package for communicating with the call enrichment API server.
"""

from .api_client import APIClient, enrich_and_wait

__all__ = ["APIClient", "enrich_and_wait"]
