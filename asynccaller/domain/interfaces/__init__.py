"""Domain Interfaces (Ports):

Defines the capabilities (Abstract Base Classes) the scheduler relies on to
inspect operation outcomes. Embedding applications may supply their own
implementations instead of the defaults in the infrastructure layer.
"""
