"""Built-in tool capabilities."""
