"""
HTTP adapter for the task lifecycle service.
"""
