"""Library Lending - Services Package

This package contains service modules for external collaborators:
- Notification sinks (logging, webhook)
- HTTP client abstraction
"""
