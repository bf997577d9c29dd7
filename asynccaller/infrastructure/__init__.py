"""Infrastructure Layer: Contains concrete implementations and adapters.

Token bucket, status classification and delay computation for the
scheduler, plus configuration, logging, the httpx adapter and console output
used by the CLI.
"""
