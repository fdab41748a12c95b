"""Step executors and their registry."""
