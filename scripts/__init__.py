"""
Scripts package for the AD admin console.

This package contains command-line scripts organized by functionality.

Subpackages:
- directory: Account, group and container administration
"""
