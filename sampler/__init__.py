"""Sampler - Core application modules.

Provides:
- SQLite models and the Resource Store for samples
- Chain Scheduler and Huey wiring for chained processing jobs
- Pipeline Orchestrator for upload and remote-URL ingestion
- Core utilities: atomic_io, paths, external tool adapter
"""

__version__ = "0.1.0"
