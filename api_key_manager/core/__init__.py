"""
Core modules for API Key Manager.

This package contains the credential pool, the assignment registry,
lifecycle policy, cost aggregation and the scheduler that drives them.
"""
