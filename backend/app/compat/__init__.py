"""
Compatibility layer — phase config and the strategies that route policy
reads and writes between the legacy and template shapes.
"""
