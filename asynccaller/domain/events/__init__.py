"""Domain Event definitions.

Represents significant occurrences in a call's lifecycle (queued, admitted,
retried, finished) that observers might react to.
"""
