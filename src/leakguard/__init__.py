"""
LeakGuard - Repository Secret Scanning Service

Scans external Git repositories for leaked credentials with TruffleHog,
deduplicates results through a shared Redis cache, and protects the
scanner from overload with a concurrency gate and sliding-window rate limits.

Copyright (c) 2025
Licensed under MIT License
"""

__version__ = "1.0.0"
__author__ = "LeakGuard Team"
__status__ = "Development"
