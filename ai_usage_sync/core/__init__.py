"""
Core modules for AI Usage Sync.

This package contains the privacy policy, identity resolution, rollup
computation and the shared error taxonomy.
"""
