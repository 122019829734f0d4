"""
Core modules for the API Key Manager.

This package contains the credential store, rotation policies, usage
ledger and the rotation engine that ties them together.
"""
