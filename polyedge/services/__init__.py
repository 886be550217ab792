"""Decision-core services."""
