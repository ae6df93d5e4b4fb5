"""Model backend client."""
