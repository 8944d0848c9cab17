"""
Local package for the RelayWatch supervisor.

This package holds the configuration layer, the command-line surface, the
metrics client and the supervisor itself.
"""
