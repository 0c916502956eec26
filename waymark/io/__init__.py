"""Format readers and writers."""
