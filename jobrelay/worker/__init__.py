"""
Job execution: handler registry, retry policy and the worker pool.
"""
