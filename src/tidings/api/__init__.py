"""Admin HTTP API for replay and queue inspection."""
