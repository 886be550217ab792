"""HTTP API for PolyEdge."""
