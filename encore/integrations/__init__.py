"""Provider adapters with rate limiting and circuit breaking."""
