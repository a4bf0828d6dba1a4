"""Agent loop, subagent delegation and conversation dispatch."""
