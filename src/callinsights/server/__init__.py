"""
Enrichment server package.

This package provides a Flask API server with ThreadPoolExecutor-based
asynchronous processing of transcription, insight and embedding jobs.
Import the Flask factory from ``callinsights.server.app``.
"""
