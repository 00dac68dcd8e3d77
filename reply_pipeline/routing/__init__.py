from .activity import NO_ACTIVITY, ActivityTracker, SessionActivity
from .message_router import MessageRouter

__all__ = ["ActivityTracker", "MessageRouter", "NO_ACTIVITY", "SessionActivity"]
