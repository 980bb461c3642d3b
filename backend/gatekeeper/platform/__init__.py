"""Cross-cutting platform helpers: session identity and per-key locking."""
