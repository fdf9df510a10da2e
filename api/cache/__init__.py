"""TTL cache used for discovery and remote listings."""
