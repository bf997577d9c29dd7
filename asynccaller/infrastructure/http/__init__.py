"""HTTP adapters producing operations the AsyncCaller can schedule."""
