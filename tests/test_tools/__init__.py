"""
Test Tools Package
Tests for the tools module (channels, delivery)
"""
