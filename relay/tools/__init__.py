from relay.tools.retry_client import RetryClient
from relay.tools.sse import done_event, error_event, format_event

__all__ = ["RetryClient", "done_event", "error_event", "format_event"]
