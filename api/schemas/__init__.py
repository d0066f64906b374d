"""
API Schemas
Request and response models for the CareCircle API
"""
