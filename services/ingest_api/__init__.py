"""Sampler - Ingest API service.

FastAPI surface over the Pipeline Orchestrator: upload and remote URL
ingestion, plus sample reads for polling asynchronous outcomes.
"""

__all__: list[str] = []
