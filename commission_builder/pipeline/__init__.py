"""Resumable pipeline: steps, orchestrator and failure handling."""
