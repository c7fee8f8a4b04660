from .collector import Collector, RequestContext, is_bot

__all__ = ["Collector", "RequestContext", "is_bot"]
