"""
Shared components: configuration, logging, errors, response envelope,
the response cache store and the settings gate.
"""
