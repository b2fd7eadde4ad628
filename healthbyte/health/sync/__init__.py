"""Remote sync for HealthByte.

Modules:
    uploader — serialized update-if-exists upload of weekly totals
"""
