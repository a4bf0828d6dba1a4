"""
Relay - conversational agent orchestration engine.

Turns one inbound chat message into a bounded sequence of model calls and
tool invocations, ending in exactly one outbound message.
"""

__version__ = "0.1.0"
