"""
Configuration loading for providers.
"""
