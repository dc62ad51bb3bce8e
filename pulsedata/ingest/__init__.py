"""Source adapters, the rate-limited HTTP client and source health tracking."""
