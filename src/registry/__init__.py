"""Registry metadata models, package sources and the per-run client."""
