"""Stream consumption and per-session scheduling."""
