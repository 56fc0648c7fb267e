"""Generic handling of resources referenced by a Build.

This module handles:
- API version resolution from provider contract labels
- Ownership and labelling of referenced objects
- Reading conventional status fields
- Watch registration per referenced kind
"""
