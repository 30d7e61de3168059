"""
Domain layer for reporting: enums, dataclasses and the failure taxonomy.
"""
