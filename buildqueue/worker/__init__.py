"""
Worker module.
Claims build jobs and runs the configured build handler.
"""
