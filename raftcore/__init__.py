"""A deterministic, message-driven implementation of the Raft consensus protocol."""

__version__ = "0.1.0"

__all__ = ["base", "follower", "leader", "log", "message", "state", "storage"]