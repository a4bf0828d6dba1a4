"""Context assembly: system instructions, skills and the bounded message window."""
