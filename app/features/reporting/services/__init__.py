"""
Reporting services: scheduler, monitor and distribution.
"""
