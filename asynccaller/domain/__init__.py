"""Domain Layer: options, value objects, capability interfaces, events and errors.

Has no dependencies on the infrastructure or core layers.
"""
