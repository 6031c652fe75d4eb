"""Message to index document pipeline."""
