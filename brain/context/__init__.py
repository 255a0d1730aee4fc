"""Recency-bucketed context digests for agents."""
