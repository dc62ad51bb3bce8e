"""
Palestine Pulse data layer.

Fetches humanitarian time series from upstream APIs, partitions them into a
static JSON tree and reads that tree back with a live-API fallback.

Packages:
    config - credentials and environment handling
    ingest - rate-limited HTTP client, source adapters, source health
    pipeline - normalizer, partitioner, manifest generator, orchestrator, tree validation
    client - local-first data loader
"""

__version__ = "2.0.0"
