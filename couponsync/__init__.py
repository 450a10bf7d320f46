"""Affiliate offer synchronization pipeline."""

from .pipeline import SyncPipeline, build_pipeline, create_session_factory

__all__ = ["SyncPipeline", "build_pipeline", "create_session_factory"]
