"""In-process counters and tracing setup."""
