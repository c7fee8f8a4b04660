"""APM metrics pipeline: capture, transfer, storage and query."""
