"""Report review workflow engine (pure, storage-agnostic)."""
