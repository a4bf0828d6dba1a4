"""Memory storage."""
