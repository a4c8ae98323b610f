"""Cross-cutting runtime plumbing (logging)."""
