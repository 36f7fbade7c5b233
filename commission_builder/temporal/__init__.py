"""Durable execution of the pipeline on Temporal."""
