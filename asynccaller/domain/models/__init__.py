"""Domain models: configuration value objects and call bookkeeping structures."""
