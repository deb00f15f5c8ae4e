"""
Command-line entrypoint.
"""
